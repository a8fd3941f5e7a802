from datetime import timedelta

import pytest
from sqlalchemy import event

from gymaccess.errors import NotFoundError, ValidationError
from gymaccess.models import AccessDevice, utcnow


def test_heartbeat_marks_device_online(services, seed, db):
    device_id = seed.device(seed.branch(), is_online=False)

    result = services.heartbeat.receive(device_id, ip_address="10.1.1.9", firmware_version="2.4.1",
                                        status={"door": "closed"})

    assert result["success"] is True
    assert result["device_id"] == device_id
    assert result["has_pending_syncs"] is False
    assert result["has_pending_commands"] is False

    device = db.query(AccessDevice).filter(AccessDevice.id == device_id).one()
    assert device.is_online is True
    assert device.last_heartbeat is not None
    assert device.ip_address == "10.1.1.9"
    assert device.firmware_version == "2.4.1"
    assert device.config == {"door": "closed"}


def test_heartbeat_reports_pending_work(services, seed):
    branch = seed.branch()
    device_id = seed.device(branch, device_type="face_terminal")
    member_id = seed.member(branch)
    services.sync_queue.queue_member_sync(member_id, "/media/p1.jpg", "Jane", [device_id])
    services.commands.send_device_command(device_id)

    result = services.heartbeat.receive(device_id)

    assert result["has_pending_syncs"] is True
    assert result["has_pending_commands"] is True


def test_heartbeat_unknown_device_has_no_side_effects(services, seed, db):
    seed.device(seed.branch(), is_online=False)

    with pytest.raises(NotFoundError):
        services.heartbeat.receive("D9")

    assert db.query(AccessDevice).count() == 1
    assert db.query(AccessDevice).filter(AccessDevice.is_online == True).count() == 0


def test_heartbeat_requires_device_id(services):
    with pytest.raises(ValidationError):
        services.heartbeat.receive("")


def test_sweep_marks_stale_devices_offline(services, seed, db):
    branch = seed.branch()
    now = utcnow()
    fresh = seed.device(branch, device_name="Fresh", last_heartbeat=now - timedelta(seconds=30))
    stale = seed.device(branch, device_name="Stale", last_heartbeat=now - timedelta(seconds=600))
    seed.device(branch, device_name="Already offline", is_online=False)

    offline = services.sweeper.sweep(now=now)

    assert offline == [stale]
    states = {d.id: d.is_online for d in db.query(AccessDevice).all()}
    assert states[fresh] is True
    assert states[stale] is False


def test_sweep_is_a_noop_without_stale_devices(services, seed):
    seed.device(seed.branch())
    assert services.sweeper.sweep() == []


def test_sweep_checks_and_writes_in_one_statement(services, seed, engine):
    now = utcnow()
    seed.device(seed.branch(), last_heartbeat=now - timedelta(seconds=600))
    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement.lstrip().split()[0].upper())

    event.listen(engine, "before_cursor_execute", capture)
    try:
        offline = services.sweeper.sweep(now=now)
    finally:
        event.remove(engine, "before_cursor_execute", capture)

    assert len(offline) == 1
    assert statements == ["UPDATE"]
