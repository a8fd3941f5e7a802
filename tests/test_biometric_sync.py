from datetime import datetime, timedelta

import pytest

from gymaccess.errors import ConflictError, NoSyncDevicesError, NotFoundError, ValidationError
from gymaccess.models import AccessDevice, BiometricSyncItem, Employee, Member, utcnow


@pytest.fixture
def terminal_setup(seed):
    branch = seed.branch()
    terminal = seed.device(branch, device_name="Face 1", device_type="face_terminal")
    member_id = seed.member(branch, full_name="Ana Lopez")
    return branch, terminal, member_id


def _item(db, sync_id):
    db.expire_all()
    return db.query(BiometricSyncItem).filter(BiometricSyncItem.id == sync_id).one()


def test_queue_twice_keeps_one_row_with_latest_photo(services, db, terminal_setup):
    _, terminal, member_id = terminal_setup

    first = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana Lopez", [terminal])
    second = services.sync_queue.queue_member_sync(member_id, "/media/p2.jpg", "Ana Lopez", [terminal])

    assert first[0]["status"] == "pending"
    assert first[0]["id"] == second[0]["id"]
    rows = db.query(BiometricSyncItem).all()
    assert len(rows) == 1
    assert rows[0].photo_url == "/media/p2.jpg"
    assert rows[0].sync_type == "add"


def test_queue_fans_out_to_face_terminals_only(services, seed, db, terminal_setup):
    branch, terminal, member_id = terminal_setup
    second_terminal = seed.device(branch, device_name="Face 2", device_type="face_terminal")
    seed.device(branch, device_name="Turnstile", device_type="turnstile")

    items = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", None)

    assert sorted(i["device_id"] for i in items) == sorted([terminal, second_terminal])
    assert all(i["person_name"] == "Ana Lopez" for i in items)

    member = db.query(Member).filter(Member.id == member_id).one()
    assert member.biometric_photo_url == "/media/p1.jpg"
    assert member.biometric_enrolled is False


def test_queue_without_terminals_is_rejected(services, seed):
    branch = seed.branch()
    seed.device(branch, device_type="turnstile")
    member_id = seed.member(branch)

    with pytest.raises(NoSyncDevicesError):
        services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "x")


def test_queue_unknown_person_or_device(services, terminal_setup):
    _, terminal, member_id = terminal_setup
    with pytest.raises(NotFoundError):
        services.sync_queue.queue_member_sync("nobody", "/media/p1.jpg", "x", [terminal])
    with pytest.raises(NotFoundError):
        services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "x", ["missing-device"])
    with pytest.raises(ValidationError):
        services.sync_queue.queue_member_sync(member_id, "", "x", [terminal])


def test_staff_sync_and_status(services, seed, db, terminal_setup):
    branch, terminal, _ = terminal_setup
    employee_id = seed.employee(branch, full_name="Sam Staff")

    items = services.sync_queue.queue_staff_sync(employee_id, "/media/s.jpg", "Sam Staff", [terminal])

    assert items[0]["staff_id"] == employee_id
    assert items[0]["member_id"] is None
    status = services.sync_queue.get_sync_status(employee_id, "staff")
    assert [s["id"] for s in status] == [items[0]["id"]]
    assert services.sync_queue.get_sync_status(employee_id, "member") == []


def test_claim_marks_items_syncing_and_records_last_sync(services, db, terminal_setup):
    _, terminal, member_id = terminal_setup
    services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana Lopez", [terminal])

    batch = services.sync_queue.claim_sync_items(terminal)

    assert batch["count"] == 1
    assert batch["items"][0]["person_uuid"] == member_id
    assert batch["items"][0]["action"] == "add"
    assert _item(db, batch["items"][0]["id"]).status == "syncing"
    assert db.query(AccessDevice).filter(AccessDevice.id == terminal).one().last_sync is not None
    assert services.sync_queue.claim_sync_items(terminal)["count"] == 0

    with pytest.raises(NotFoundError):
        services.sync_queue.claim_sync_items("missing")


def test_success_confirms_enrollment(services, db, terminal_setup):
    _, terminal, member_id = terminal_setup
    item = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])[0]

    result = services.sync_queue.mark_sync_complete(item["id"], True)

    assert result["status"] == "completed"
    assert result["processed_at"] is not None
    assert db.query(Member).filter(Member.id == member_id).one().biometric_enrolled is True


def test_failure_increments_retry_and_keeps_enrollment(services, db, terminal_setup):
    _, terminal, member_id = terminal_setup
    item = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])[0]
    row = _item(db, item["id"])
    row.retry_count = 2
    db.commit()

    result = services.sync_queue.mark_sync_complete(item["id"], False, "device unreachable")

    assert result["status"] == "failed"
    assert result["retry_count"] == 3
    assert result["error_message"] == "device unreachable"
    assert result["retryable"] is True
    db.expire_all()
    assert db.query(Member).filter(Member.id == member_id).one().biometric_enrolled is False


def test_requeue_after_failure_preserves_history(services, db, terminal_setup):
    _, terminal, member_id = terminal_setup
    item = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])[0]
    services.sync_queue.mark_sync_complete(item["id"], False, "timeout")

    requeued = services.sync_queue.queue_member_sync(member_id, "/media/p2.jpg", "Ana", [terminal])[0]

    assert requeued["id"] == item["id"]
    assert requeued["status"] == "pending"
    assert requeued["retry_count"] == 1
    assert requeued["error_message"] == "timeout"

    done = services.sync_queue.mark_sync_complete(item["id"], True)
    assert done["error_message"] is None
    assert done["retry_count"] == 1


def test_mark_unknown_or_closed_item(services, terminal_setup):
    _, terminal, member_id = terminal_setup
    with pytest.raises(NotFoundError):
        services.sync_queue.mark_sync_complete("missing", True)

    item = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])[0]
    services.sync_queue.mark_sync_complete(item["id"], True)
    with pytest.raises(ConflictError):
        services.sync_queue.mark_sync_complete(item["id"], False)


def test_remove_biometric_data_queues_deletes(services, db, terminal_setup):
    _, terminal, member_id = terminal_setup
    item = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])[0]
    services.sync_queue.mark_sync_complete(item["id"], True)

    count = services.sync_queue.remove_biometric_data(member_id, "member")

    assert count == 1
    row = _item(db, item["id"])
    assert row.sync_type == "delete"
    assert row.status == "pending"
    assert db.query(Member).filter(Member.id == member_id).one().biometric_enrolled is False

    done = services.sync_queue.mark_sync_complete(item["id"], True)
    assert done["status"] == "completed"
    db.expire_all()
    assert db.query(Member).filter(Member.id == member_id).one().biometric_enrolled is False


def test_pending_items_are_fifo(services, seed, terminal_setup):
    branch, terminal, member_id = terminal_setup
    other_member = seed.member(branch, full_name="Ben")
    first = services.sync_queue.queue_member_sync(member_id, "/media/a.jpg", "Ana", [terminal])[0]
    second = services.sync_queue.queue_member_sync(other_member, "/media/b.jpg", "Ben", [terminal])[0]

    pending = services.sync_queue.get_pending_sync_items(terminal)

    assert [p["id"] for p in pending] == [first["id"], second["id"]]
    assert services.sync_queue.get_pending_sync_items("other-device") == []


def test_operator_retry(services, terminal_setup):
    _, terminal, member_id = terminal_setup
    item = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])[0]

    with pytest.raises(ConflictError):
        services.sync_queue.retry_sync(item["id"])

    services.sync_queue.mark_sync_complete(item["id"], False, "offline")
    retried = services.sync_queue.retry_sync(item["id"])

    assert retried["status"] == "pending"
    assert retried["retry_count"] == 1


def test_automatic_retry_honours_backoff_and_limit(services, db, terminal_setup):
    _, terminal, member_id = terminal_setup
    item = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])[0]
    services.sync_queue.mark_sync_complete(item["id"], False, "offline")
    failed_at = _item(db, item["id"]).processed_at

    # First retry waits the base backoff
    assert services.sync_queue.retry_failed_syncs(now=failed_at + timedelta(seconds=10)) == []
    assert services.sync_queue.retry_failed_syncs(now=failed_at + timedelta(seconds=31)) == [item["id"]]
    assert _item(db, item["id"]).status == "pending"

    row = _item(db, item["id"])
    row.status = "failed"
    row.retry_count = services.sync_queue.max_retries
    db.commit()

    assert services.sync_queue.retry_failed_syncs(now=utcnow() + timedelta(days=1)) == []
    assert services.sync_queue.get_sync_item(item["id"])["retryable"] is False


def test_backoff_is_exponential_and_capped(services):
    queue = services.sync_queue
    assert queue.backoff_for(1) == timedelta(seconds=30)
    assert queue.backoff_for(2) == timedelta(seconds=60)
    assert queue.backoff_for(3) == timedelta(seconds=120)
    assert queue.backoff_for(20) == timedelta(seconds=3600)


def test_biometric_stats(services, seed, db, terminal_setup):
    branch, terminal, member_id = terminal_setup
    seed.member(branch, full_name="Ben")
    item = services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])[0]
    services.sync_queue.mark_sync_complete(item["id"], True)

    stats = services.sync_queue.get_biometric_stats(branch)

    assert stats == {"enrolled_members": 1, "total_members": 2, "enrollment_rate": 50, "pending_syncs": 0}


def test_staff_success_marks_employee_enrolled(services, seed, db, terminal_setup):
    branch, terminal, _ = terminal_setup
    employee_id = seed.employee(branch)
    item = services.sync_queue.queue_staff_sync(employee_id, "/media/s.jpg", "Sam", [terminal])[0]

    services.sync_queue.mark_sync_complete(item["id"], True)

    assert db.query(Employee).filter(Employee.id == employee_id).one().biometric_enrolled is True


def test_late_report_does_not_close_newer_request(services, db, terminal_setup):
    _, terminal, member_id = terminal_setup
    services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])
    sync_id = services.sync_queue.claim_sync_items(terminal)["items"][0]["id"]
    services.sync_queue.queue_member_sync(member_id, "/media/p2.jpg", "Ana", [terminal])

    with pytest.raises(ConflictError):
        services.sync_queue.mark_sync_complete(sync_id, True)

    row = _item(db, sync_id)
    assert row.status == "pending"
    assert row.photo_url == "/media/p2.jpg"
    assert db.query(Member).filter(Member.id == member_id).one().biometric_enrolled is False

    batch = services.sync_queue.claim_sync_items(terminal)
    assert batch["items"][0]["photo_url"] == "/media/p2.jpg"
    assert services.sync_queue.mark_sync_complete(sync_id, True)["status"] == "completed"


def test_report_must_name_the_claimed_request(services, terminal_setup):
    _, terminal, member_id = terminal_setup
    services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Ana", [terminal])
    first = services.sync_queue.claim_sync_items(terminal)["items"][0]
    services.sync_queue.queue_member_sync(member_id, "/media/p2.jpg", "Ana", [terminal])
    second = services.sync_queue.claim_sync_items(terminal)["items"][0]

    with pytest.raises(ConflictError):
        services.sync_queue.mark_sync_complete(first["id"], True,
                                               queued_at=datetime.fromisoformat(first["queued_at"]))

    done = services.sync_queue.mark_sync_complete(second["id"], True,
                                                  queued_at=datetime.fromisoformat(second["queued_at"]))
    assert done["status"] == "completed"
    assert done["claimed_at"] is None
