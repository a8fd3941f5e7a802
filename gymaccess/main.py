import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from .access_events import AccessEventLog
from .attendance import AttendanceValidator, StaffAttendanceService
from .auth import TokenAuthenticator
from .biometric_sync import PERSON_TYPES, BiometricSyncQueue
from .commands import CommandDispatcher
from .database import SessionLocal, init_db
from .device_registry import DeviceRegistry
from .errors import AccessControlError, NotAuthenticatedError, NotFoundError, ValidationError
from .gate import GateDecisionService
from .heartbeat import HeartbeatReceiver, LivenessSweeper
from .leads import LeadCaptureService
from .logger_helper import create_logging_middleware, setup_logger
from .maintenance import MaintenanceWorker
from .models import STAFF_ROLES
from .photo_check import PhotoInspector
from .realtime import RealtimeHub
from .settings import (
    ACCESS_EVENT_LIMIT,
    ENABLE_MAINTENANCE,
    HEARTBEAT_TTL_SECONDS,
    MAX_LEAD_BODY_BYTES,
    MEDIA_DIR,
    MEDIA_URL,
    WEBHOOK_LEAD_SECRET,
)

logger = logging.getLogger(__name__)


class Services:
    """Every component wired to one session factory and one realtime hub."""

    def __init__(self, session_factory, hub: Optional[RealtimeHub] = None,
                 heartbeat_ttl_seconds: int = HEARTBEAT_TTL_SECONDS):
        self.session_factory = session_factory
        self.hub = hub or RealtimeHub()
        self.authenticator = TokenAuthenticator(session_factory)
        self.registry = DeviceRegistry(session_factory)
        self.heartbeat = HeartbeatReceiver(session_factory)
        self.sweeper = LivenessSweeper(session_factory, heartbeat_ttl_seconds)
        self.event_log = AccessEventLog(session_factory, self.hub)
        self.commands = CommandDispatcher(session_factory, self.event_log, self.hub, self.authenticator)
        self.attendance = AttendanceValidator(session_factory)
        self.staff_attendance = StaffAttendanceService(session_factory)
        self.gate = GateDecisionService(session_factory, self.event_log, self.attendance, self.staff_attendance)
        self.sync_queue = BiometricSyncQueue(session_factory)
        self.leads = LeadCaptureService(session_factory)
        self.maintenance = MaintenanceWorker(self.sweeper, self.sync_queue)
        self._photo_inspector = None

    @property
    def photo_inspector(self) -> PhotoInspector:
        # Loads the OpenCV cascade on first use
        if self._photo_inspector is None:
            self._photo_inspector = PhotoInspector()
        return self._photo_inspector


services: Optional[Services] = None


def get_services() -> Services:
    global services
    if services is None:
        services = Services(SessionLocal)
    return services


def current_user(authorization: Optional[str] = Header(None),
                 svc: Services = Depends(get_services)) -> str:
    return svc.authenticator.resolve_user(authorization)


def staff_user(user_id: str = Depends(current_user), svc: Services = Depends(get_services)) -> str:
    svc.authenticator.require_role(user_id, STAFF_ROLES)
    return user_id


# Request Models

class DeviceCreate(BaseModel):
    branch_id: Optional[str] = None
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    device_type: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    relay_mode: Optional[int] = None
    relay_delay: Optional[int] = None


class DeviceUpdate(DeviceCreate):
    pass


class HeartbeatRequest(BaseModel):
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    firmware_version: Optional[str] = None
    status: Optional[Dict[str, Any]] = None


class TriggerRelayRequest(BaseModel):
    device_id: Optional[str] = None
    duration: Optional[int] = None


class DeviceCommandRequest(BaseModel):
    device_id: str
    command_type: str = "relay_open"
    payload: Optional[Dict[str, Any]] = None


class CommandResultRequest(BaseModel):
    success: bool


class AccessEventRequest(BaseModel):
    device_id: Optional[str] = None
    person_uuid: Optional[str] = None
    confidence: Optional[float] = None
    photo_base64: Optional[str] = None
    timestamp: Optional[str] = None


class SyncRequest(BaseModel):
    photo_url: Optional[str] = None
    person_name: Optional[str] = None
    device_ids: Optional[List[str]] = None


class RemoveBiometricsRequest(BaseModel):
    device_ids: Optional[List[str]] = None


class SyncResultRequest(BaseModel):
    sync_id: str
    success: bool
    error_message: Optional[str] = None
    queued_at: Optional[datetime] = None


class CheckInRequest(BaseModel):
    member_id: str
    branch_id: str
    method: str = "manual"


class CheckOutRequest(BaseModel):
    member_id: str


class StaffCheckInRequest(BaseModel):
    employee_id: str
    branch_id: Optional[str] = None
    method: str = "manual"


class StaffCheckOutRequest(BaseModel):
    employee_id: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize resources on startup."""
    init_db()
    logger.info("Database initialized")

    svc = get_services()
    if ENABLE_MAINTENANCE:
        svc.maintenance.start()

    yield

    svc.maintenance.stop()
    logger.info("Shutting down...")


app = FastAPI(
    title="Gym Access Control",
    description="Access devices, biometric enrollment sync and attendance for gym branches",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

create_logging_middleware(app, setup_logger())

app.mount(MEDIA_URL, StaticFiles(directory=MEDIA_DIR, check_dir=False), name="media")


@app.exception_handler(AccessControlError)
async def access_control_error_handler(request: Request, exc: AccessControlError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "success": False})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/health")
def health_check(svc: Services = Depends(get_services)):
    return {
        "status": "running",
        "maintenance": svc.maintenance.running,
        "realtime_channels": len(svc.hub.active_channels()),
    }


# Device Registry Endpoints

@app.post("/devices")
def add_device(req: DeviceCreate, user_id: str = Depends(staff_user), svc: Services = Depends(get_services)):
    return svc.registry.add_device(req.model_dump(exclude_none=True))


@app.get("/devices")
def list_devices(branch_id: Optional[str] = None, user_id: str = Depends(staff_user),
                 svc: Services = Depends(get_services)):
    return svc.registry.fetch_devices(branch_id)


@app.get("/devices/stats")
def device_stats(branch_id: Optional[str] = None, user_id: str = Depends(staff_user),
                 svc: Services = Depends(get_services)):
    return svc.registry.get_device_stats(branch_id)


@app.get("/devices/{device_id}")
def get_device(device_id: str, user_id: str = Depends(staff_user), svc: Services = Depends(get_services)):
    device = svc.registry.fetch_device(device_id)
    if not device:
        raise NotFoundError("Device not found")
    return device


@app.patch("/devices/{device_id}")
def update_device(device_id: str, req: DeviceUpdate, user_id: str = Depends(staff_user),
                  svc: Services = Depends(get_services)):
    return svc.registry.update_device(device_id, req.model_dump(exclude_unset=True))


@app.delete("/devices/{device_id}")
def delete_device(device_id: str, user_id: str = Depends(staff_user), svc: Services = Depends(get_services)):
    svc.registry.delete_device(device_id)
    return {"success": True, "device_id": device_id}


# Device-facing Endpoints

@app.post("/device-heartbeat")
def device_heartbeat(req: HeartbeatRequest, svc: Services = Depends(get_services)):
    return svc.heartbeat.receive(req.device_id, req.ip_address, req.firmware_version, req.status)


@app.post("/device-access-event")
def device_access_event(req: AccessEventRequest, svc: Services = Depends(get_services)):
    return svc.gate.handle_access_event(req.device_id, req.person_uuid, req.confidence,
                                        req.photo_base64, req.timestamp)


@app.get("/device-commands/pending")
def pending_commands(device_id: Optional[str] = None, limit: int = 20, svc: Services = Depends(get_services)):
    if not device_id:
        raise ValidationError("device_id is required")
    commands = svc.commands.fetch_pending_commands(device_id, limit)
    return {"device_id": device_id, "commands": commands, "count": len(commands)}


@app.post("/device-commands/{command_id}/result")
def command_result(command_id: str, req: CommandResultRequest, svc: Services = Depends(get_services)):
    return svc.commands.report_command_result(command_id, req.success)


@app.get("/device-sync-data")
def device_sync_data(device_id: Optional[str] = None, limit: int = 50, svc: Services = Depends(get_services)):
    if not device_id:
        raise ValidationError("device_id is required")
    return svc.sync_queue.claim_sync_items(device_id, limit)


@app.post("/device-sync-result")
def device_sync_result(req: SyncResultRequest, svc: Services = Depends(get_services)):
    return svc.sync_queue.mark_sync_complete(req.sync_id, req.success, req.error_message, req.queued_at)


# Command Endpoints

@app.post("/device-trigger-relay")
def trigger_relay(req: TriggerRelayRequest, user_id: str = Depends(current_user),
                  svc: Services = Depends(get_services)):
    return svc.commands.trigger_relay(user_id, req.device_id, req.duration)


@app.post("/device-commands")
def send_device_command(req: DeviceCommandRequest, user_id: str = Depends(staff_user),
                        svc: Services = Depends(get_services)):
    return svc.commands.send_device_command(req.device_id, req.command_type, req.payload, issued_by=user_id)


@app.get("/device-commands/{command_id}")
def get_device_command(command_id: str, user_id: str = Depends(staff_user),
                       svc: Services = Depends(get_services)):
    command = svc.commands.get_command(command_id)
    if not command:
        raise NotFoundError("Command not found")
    return command


# Access Event Endpoints

@app.get("/access-events")
def list_access_events(branch_id: Optional[str] = None, limit: int = ACCESS_EVENT_LIMIT,
                       event_type: Optional[str] = None, access_granted: Optional[bool] = None,
                       start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                       user_id: str = Depends(staff_user), svc: Services = Depends(get_services)):
    return svc.event_log.fetch_access_events(branch_id, limit, event_type, access_granted, start_date, end_date)


# Biometric Sync Endpoints

def _check_person_type(person_type: str):
    if person_type not in PERSON_TYPES:
        raise ValidationError(f"Invalid person type: {person_type}")


@app.post("/biometrics/members/{member_id}/sync")
def queue_member_sync(member_id: str, req: SyncRequest, user_id: str = Depends(staff_user),
                      svc: Services = Depends(get_services)):
    items = svc.sync_queue.queue_member_sync(member_id, req.photo_url, req.person_name, req.device_ids)
    return {"success": True, "items": items, "count": len(items)}


@app.post("/biometrics/staff/{staff_id}/sync")
def queue_staff_sync(staff_id: str, req: SyncRequest, user_id: str = Depends(staff_user),
                     svc: Services = Depends(get_services)):
    items = svc.sync_queue.queue_staff_sync(staff_id, req.photo_url, req.person_name, req.device_ids)
    return {"success": True, "items": items, "count": len(items)}


def _enroll_photo(svc: Services, person_type: str, person_id: str, contents: bytes,
                  person_name: Optional[str]) -> Dict[str, Any]:
    """Check an enrollment photo for a single face, store it and queue it to the terminals."""
    photo_url = svc.photo_inspector.accept_upload(contents, prefix=f"{person_type}-{person_id}")
    queue = svc.sync_queue.queue_member_sync if person_type == "member" else svc.sync_queue.queue_staff_sync
    try:
        items = queue(person_id, photo_url, person_name)
    except Exception:
        svc.photo_inspector.discard(photo_url)
        raise
    return {"success": True, "photo_url": photo_url, "items": items, "count": len(items)}


@app.post("/biometrics/members/{member_id}/photo")
async def upload_member_photo(
    member_id: str,
    file: UploadFile = File(...),
    person_name: Optional[str] = Form(None),
    user_id: str = Depends(staff_user),
    svc: Services = Depends(get_services),
):
    return _enroll_photo(svc, "member", member_id, await file.read(), person_name)


@app.post("/biometrics/staff/{staff_id}/photo")
async def upload_staff_photo(
    staff_id: str,
    file: UploadFile = File(...),
    person_name: Optional[str] = Form(None),
    user_id: str = Depends(staff_user),
    svc: Services = Depends(get_services),
):
    return _enroll_photo(svc, "staff", staff_id, await file.read(), person_name)


@app.get("/biometrics/pending")
def pending_syncs(device_id: Optional[str] = None, user_id: str = Depends(staff_user),
                  svc: Services = Depends(get_services)):
    return svc.sync_queue.get_pending_sync_items(device_id)


@app.get("/biometrics/stats")
def biometric_stats(branch_id: Optional[str] = None, user_id: str = Depends(staff_user),
                    svc: Services = Depends(get_services)):
    return svc.sync_queue.get_biometric_stats(branch_id)


@app.post("/biometrics/sync/{sync_id}/retry")
def retry_sync(sync_id: str, user_id: str = Depends(staff_user), svc: Services = Depends(get_services)):
    return svc.sync_queue.retry_sync(sync_id)


@app.get("/biometrics/{person_type}/{person_id}/status")
def sync_status(person_type: str, person_id: str, user_id: str = Depends(staff_user),
                svc: Services = Depends(get_services)):
    _check_person_type(person_type)
    return svc.sync_queue.get_sync_status(person_id, person_type)


@app.delete("/biometrics/{person_type}/{person_id}")
def remove_biometrics(person_type: str, person_id: str, req: Optional[RemoveBiometricsRequest] = None,
                      user_id: str = Depends(staff_user), svc: Services = Depends(get_services)):
    _check_person_type(person_type)
    device_ids = req.device_ids if req else None
    count = svc.sync_queue.remove_biometric_data(person_id, person_type, device_ids)
    return {"success": True, "count": count}


# Attendance Endpoints

@app.post("/attendance/check-in")
def member_check_in(req: CheckInRequest, user_id: str = Depends(staff_user),
                    svc: Services = Depends(get_services)):
    return svc.attendance.check_in(req.member_id, req.branch_id, req.method)


@app.post("/attendance/check-out")
def member_check_out(req: CheckOutRequest, user_id: str = Depends(staff_user),
                     svc: Services = Depends(get_services)):
    return svc.attendance.check_out(req.member_id)


@app.get("/attendance/today")
def today_attendance(branch_id: str, user_id: str = Depends(staff_user), svc: Services = Depends(get_services)):
    return svc.attendance.get_today_attendance(branch_id)


@app.get("/attendance/checked-in")
def checked_in_members(branch_id: str, user_id: str = Depends(staff_user),
                       svc: Services = Depends(get_services)):
    return svc.attendance.get_checked_in_members(branch_id)


@app.get("/attendance/members/{member_id}")
def member_attendance(member_id: str, limit: int = 30, user_id: str = Depends(staff_user),
                      svc: Services = Depends(get_services)):
    return svc.attendance.get_member_attendance(member_id, limit)


@app.post("/staff-attendance/check-in")
def staff_check_in(req: StaffCheckInRequest, user_id: str = Depends(staff_user),
                   svc: Services = Depends(get_services)):
    return svc.staff_attendance.check_in(req.employee_id, req.branch_id, req.method)


@app.post("/staff-attendance/check-out")
def staff_check_out(req: StaffCheckOutRequest, user_id: str = Depends(staff_user),
                    svc: Services = Depends(get_services)):
    return svc.staff_attendance.check_out(req.employee_id)


@app.get("/staff-attendance/checked-in")
def checked_in_staff(branch_id: str, user_id: str = Depends(staff_user), svc: Services = Depends(get_services)):
    return svc.staff_attendance.get_checked_in_staff(branch_id)


# Lead Endpoints

async def _read_json_body(request: Request) -> Dict[str, Any]:
    content_length = int(request.headers.get("content-length") or 0)
    if content_length > MAX_LEAD_BODY_BYTES:
        raise AccessControlError("Request too large", status_code=413)
    raw = await request.body()
    if len(raw) > MAX_LEAD_BODY_BYTES:
        raise AccessControlError("Request too large", status_code=413)
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")
    return body


@app.post("/capture-lead")
async def capture_lead(request: Request, svc: Services = Depends(get_services)):
    body = await _read_json_body(request)
    return svc.leads.capture_lead(
        body.get("fullName") or body.get("full_name"),
        body.get("phone"),
        body.get("email"),
        body.get("source"),
    )


@app.post("/webhook-lead-capture")
async def webhook_lead_capture(request: Request, x_webhook_secret: Optional[str] = Header(None),
                               svc: Services = Depends(get_services)):
    if not WEBHOOK_LEAD_SECRET or x_webhook_secret != WEBHOOK_LEAD_SECRET:
        raise NotAuthenticatedError()
    body = await _read_json_body(request)
    payload, created = svc.leads.capture_webhook_lead(body)
    return JSONResponse(status_code=201 if created else 200, content=payload)


# Realtime Streams

async def _drain(websocket: WebSocket):
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


async def _stream(websocket: WebSocket, register: Callable[[Callable[[Any], None]], Callable[[], None]]):
    """
    Forward hub deliveries to the socket until the client goes away.

    Publishers may run on worker threads, so deliveries are handed to the
    event loop through a queue.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = register(lambda message: loop.call_soon_threadsafe(queue.put_nowait, message))
    await websocket.accept()
    receiver = asyncio.ensure_future(_drain(websocket))
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    except WebSocketDisconnect:
        pass
    finally:
        receiver.cancel()
        unsubscribe()


@app.websocket("/realtime/access-events/{branch_id}")
async def access_event_stream(websocket: WebSocket, branch_id: str, svc: Services = Depends(get_services)):
    await _stream(websocket, lambda push: svc.event_log.subscribe_to_access_events(branch_id, push))


@app.websocket("/realtime/device-commands/{command_id}")
async def command_status_stream(websocket: WebSocket, command_id: str, svc: Services = Depends(get_services)):
    def register(push):
        return svc.commands.subscribe_to_command_status(
            command_id, lambda status, executed_at: push({"status": status, "executed_at": executed_at})
        )

    await _stream(websocket, register)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("gymaccess.main:app", host="0.0.0.0", port=8000)
