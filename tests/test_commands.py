import pytest

from gymaccess.errors import (
    ConflictError,
    DeviceOfflineError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from gymaccess.models import DeviceAccessEvent, DeviceCommand


def test_trigger_relay_writes_command_and_event(services, seed, db):
    branch = seed.branch()
    user_id, _ = seed.user("manager")
    employee_id = seed.employee(branch, user_id=user_id)
    device_id = seed.device(branch, relay_delay=7)

    result = services.commands.trigger_relay(user_id, device_id)

    assert result["success"] is True
    assert result["message"] == "Relay trigger command sent"
    assert result["device_name"] == "Front Gate"
    assert result["duration"] == 7

    command = db.query(DeviceCommand).one()
    assert command.id == result["command_id"]
    assert command.command_type == "relay_open"
    assert command.status == "pending"
    assert command.payload == {"duration": 7}
    assert command.issued_by == user_id

    event = db.query(DeviceAccessEvent).one()
    assert event.event_type == "manual_trigger"
    assert event.access_granted is True
    assert event.response_sent == "OPEN"
    assert event.device_message == "Manual trigger by staff"
    assert event.staff_id == employee_id


@pytest.mark.parametrize("requested, relay_delay, expected", [
    (3, 7, 3),
    (None, 7, 7),
    (None, None, 5),
    (0, 7, 7),
    (0, None, 5),
])
def test_trigger_relay_duration_resolution(services, seed, requested, relay_delay, expected):
    user_id, _ = seed.user("staff")
    device_id = seed.device(seed.branch(), relay_delay=relay_delay)
    assert services.commands.trigger_relay(user_id, device_id, requested)["duration"] == expected


def test_trigger_relay_offline_device_writes_nothing(services, seed, db):
    user_id, _ = seed.user("owner")
    device_id = seed.device(seed.branch(), is_online=False)

    with pytest.raises(DeviceOfflineError):
        services.commands.trigger_relay(user_id, device_id)

    assert db.query(DeviceCommand).count() == 0
    assert db.query(DeviceAccessEvent).count() == 0


def test_trigger_relay_requires_allowed_role(services, seed, db):
    user_id, _ = seed.user("trainer")
    device_id = seed.device(seed.branch())

    with pytest.raises(PermissionDeniedError):
        services.commands.trigger_relay(user_id, device_id)

    assert db.query(DeviceCommand).count() == 0
    assert db.query(DeviceAccessEvent).count() == 0


def test_trigger_relay_unknown_device(services, seed):
    user_id, _ = seed.user("admin")
    with pytest.raises(NotFoundError):
        services.commands.trigger_relay(user_id, "missing")
    with pytest.raises(ValidationError):
        services.commands.trigger_relay(user_id, "")
    with pytest.raises(ValidationError):
        services.commands.trigger_relay(user_id, "missing", -1)


def test_command_lifecycle_publishes_status(services, seed):
    device_id = seed.device(seed.branch())
    command = services.commands.send_device_command(device_id)
    updates = []
    unsubscribe = services.commands.subscribe_to_command_status(
        command["id"], lambda status, executed_at: updates.append((status, executed_at)))

    pending = services.commands.fetch_pending_commands(device_id)
    assert [c["id"] for c in pending] == [command["id"]]
    assert pending[0]["status"] == "sent"
    assert services.commands.fetch_pending_commands(device_id) == []

    done = services.commands.report_command_result(command["id"], True)
    assert done["status"] == "acknowledged"
    assert done["executed_at"] is not None

    assert [u[0] for u in updates] == ["sent", "acknowledged"]
    assert updates[0][1] is None
    assert updates[1][1] == done["executed_at"]

    unsubscribe()
    assert services.hub.active_channels() == []


def test_terminal_command_rejects_second_report(services, seed):
    device_id = seed.device(seed.branch())
    command = services.commands.send_device_command(device_id)
    services.commands.report_command_result(command["id"], False)

    with pytest.raises(ConflictError):
        services.commands.report_command_result(command["id"], True)
    assert services.commands.get_command(command["id"])["status"] == "failed"


def test_command_status_listener_ignores_other_commands(services, seed):
    device_id = seed.device(seed.branch())
    first = services.commands.send_device_command(device_id)
    second = services.commands.send_device_command(device_id)
    updates = []
    services.commands.subscribe_to_command_status(first["id"], lambda status, _: updates.append(status))

    services.commands.report_command_result(second["id"], True)

    assert updates == []


def test_trigger_relay_publishes_manual_event(services, seed):
    branch = seed.branch()
    user_id, _ = seed.user("staff")
    device_id = seed.device(branch)
    received = []
    services.event_log.subscribe_to_access_events(branch, received.append)

    services.commands.trigger_relay(user_id, device_id)

    assert [e["event_type"] for e in received] == ["manual_trigger"]
