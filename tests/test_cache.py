import pytest

import config
import services
import store
from exceptions import ZeroActiveDoctorError
from models import QueueEntry


def _prime(session, fake_redis):
    services.get_board(session)
    assert fake_redis.exists(services.BOARD_CACHE_KEY)


def test_board_is_served_from_cache(session, fake_redis):
    services.insert_queue_entry(session, "Ana")
    board = services.get_board(session)
    assert 0 < fake_redis.ttl(services.BOARD_CACHE_KEY) <= config.POLL_INTERVAL_SECONDS

    # Written behind the service's back, so the cache is not dropped
    store.add_entry(session, QueueEntry(ticket_number=2, patient_name="Ben", position=2))

    assert services.get_board(session) == board
    fresh = services.get_board(session, use_cache=False)
    assert [e["patient_name"] for e in fresh["queue"]] == ["Ana", "Ben"]


def test_public_queue_uses_cache(client, fake_redis):
    client.post("/queue", json={"patient_name": "Ana"})
    first = client.get("/queue").json()
    assert fake_redis.exists(services.BOARD_CACHE_KEY)
    assert client.get("/queue").json() == first


@pytest.mark.parametrize(
    "mutate",
    [
        lambda s, entry, doctor: services.insert_queue_entry(s, "Cleo"),
        lambda s, entry, doctor: services.proceed(s, entry.id),
        lambda s, entry, doctor: services.skip(s, entry.id),
        lambda s, entry, doctor: services.delete_entry(s, entry.id),
        lambda s, entry, doctor: services.mark_done(s, entry.id),
        lambda s, entry, doctor: services.create_doctor(s, "Dr. Grey"),
        lambda s, entry, doctor: services.update_doctor(s, doctor.id, "Dr. G. House"),
        lambda s, entry, doctor: services.delete_doctor(s, doctor.id),
        lambda s, entry, doctor: services.set_in_charge(s, doctor.id),
    ],
    ids=[
        "insert",
        "proceed",
        "skip",
        "delete",
        "done",
        "create_doctor",
        "update_doctor",
        "delete_doctor",
        "set_in_charge",
    ],
)
def test_mutations_drop_board_cache(session, fake_redis, mutate):
    services.insert_queue_entry(session, "Ana")
    entry = services.insert_queue_entry(session, "Ben")
    doctor = services.create_doctor(session, "Dr. House")
    _prime(session, fake_redis)

    mutate(session, entry, doctor)

    assert not fake_redis.exists(services.BOARD_CACHE_KEY)


def test_failed_set_in_charge_drops_board_cache(session, fake_redis, fail_on_call):
    house = services.create_doctor(session, "Dr. House")
    grey = services.create_doctor(session, "Dr. Grey")
    services.set_in_charge(session, house.id)
    _prime(session, fake_redis)
    fail_on_call("activate_doctor", 1)

    with pytest.raises(ZeroActiveDoctorError):
        services.set_in_charge(session, grey.id)

    assert not fake_redis.exists(services.BOARD_CACHE_KEY)
    assert services.get_board(session)["doctor_in_charge"] is None


def test_board_read_during_handover_is_not_kept(session, fake_redis, monkeypatch):
    house = services.create_doctor(session, "Dr. House")
    grey = services.create_doctor(session, "Dr. Grey")
    services.set_in_charge(session, house.id)
    activate = store.activate_doctor
    seen = []

    def poll_then_activate(s, doctor_id, commit=True):
        # A board poll lands between clearing the roster and setting the doctor
        seen.append(services.get_board(s)["doctor_in_charge"])
        return activate(s, doctor_id, commit=commit)

    monkeypatch.setattr(store, "activate_doctor", poll_then_activate)
    services.set_in_charge(session, grey.id)

    assert seen == [None]
    assert services.get_board(session)["doctor_in_charge"]["id"] == grey.id


def test_rate_limit_blocks_after_limit(fake_redis):
    results = [services.check_rate_limit("10.0.0.1", "booking", 3, 60) for _ in range(5)]

    assert results == [True, True, True, False, False]
    assert 0 < fake_redis.ttl("rate_limit:booking:10.0.0.1") <= 60
    assert services.check_rate_limit("10.0.0.2", "booking", 3, 60)


def test_rate_limit_window_is_not_extended(fake_redis):
    key = "rate_limit:booking:10.0.0.1"
    services.check_rate_limit("10.0.0.1", "booking", 3, 60)
    fake_redis.expire(key, 5)
    services.check_rate_limit("10.0.0.1", "booking", 3, 60)
    assert fake_redis.ttl(key) <= 5


def test_booking_endpoint_returns_429(client, fake_redis, monkeypatch):
    monkeypatch.setattr(config, "BOOKING_RATE_LIMIT", 2)
    codes = [
        client.post("/queue", json={"patient_name": f"Patient {i}"}).status_code
        for i in range(3)
    ]
    assert codes == [201, 201, 429]
    assert len(client.get("/queue").json()["queue"]) == 2
