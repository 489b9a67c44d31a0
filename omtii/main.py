# omtii/main.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.encoders import jsonable_encoder
from fastapi.responses import FileResponse, JSONResponse
from sqlmodel import Session, select
from starlette.websockets import WebSocketState

from omtii import catalog, moderation, settings
from omtii.auth import get_password_hash
from omtii.backend import Backend, create_backend
from omtii.dashboards import DASHBOARDS, dashboard_for
from omtii.db import create_db_and_tables, engine
from omtii.errors import MarketplaceError, RemoteRejected
from omtii.gate import Decision, RouteRequirement, authorize
from omtii.images import AVATARS_BUCKET, SERVICE_IMAGES_BUCKET, ImageUploader
from omtii.messaging import MessageThread, fetch_thread, send_message
from omtii.models import (
    AdminServiceUpdate,
    CategoryCreate,
    CategoryUpdate,
    Identity,
    LoginForm,
    MessageCreate,
    Notice,
    Profile,
    ProfileUpdate,
    RegisterForm,
    RequestCreate,
    RequestStatusUpdate,
    Role,
    RoleGrant,
    ServiceCreate,
    ServiceStatus,
    ServiceUpdate,
    UserRole,
    UserUpdate,
)
from omtii.realtime import KafkaChangeRelay
from omtii.service_requests import Party, create_request, get_request, list_requests, set_status
from omtii.session_store import SessionStore
from omtii.utils import (
    ALREADY_REGISTERED,
    confirm_category_delete,
    confirm_service_delete,
    confirm_user_delete,
    get_backend,
    get_session_store,
    login_error_message,
    post_login_path,
    require_admin,
    require_client,
    require_login,
    require_vendor,
    validate_password,
)
from topic_generator.create_topic import create_kafka_topic

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Websocket close code for a connection the gate refuses
POLICY_VIOLATION = 1008


def create_default_admin() -> None:
    """Make sure one super admin exists so moderation is reachable on a fresh install."""
    with Session(engine) as session:
        existing = session.exec(select(UserRole).where(UserRole.role == Role.SUPER_ADMIN)).first()
        if existing:
            return
        identity = session.exec(select(Identity).where(Identity.email == settings.DEFAULT_ADMIN_EMAIL)).first()
        if identity is None:
            identity = Identity(
                email=settings.DEFAULT_ADMIN_EMAIL,
                hashed_password=get_password_hash(str(settings.DEFAULT_ADMIN_PASSWORD)),
                email_confirmed=True,
            )
            session.add(identity)
            session.flush()
            session.add(Profile(id=identity.id, full_name="Admin", email=identity.email, account_type="buyer"))
        session.add(UserRole(user_id=identity.id, role=Role.SUPER_ADMIN))
        session.commit()
        logger.info("Default super admin created.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan event handler to manage application startup and shutdown tasks.

    Initializes the database, creates the default super admin, builds the
    backend client and the session store, and starts the optional Kafka
    change relay.
    """
    create_db_and_tables()
    logger.info("Database created and tables ensured.")
    create_default_admin()

    backend = create_backend(
        engine,
        str(settings.SECRET_KEY),
        settings.STORAGE_ROOT,
        settings.PUBLIC_BASE_URL,
        access_token_expire_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
        require_email_confirmation=settings.REQUIRE_EMAIL_CONFIRMATION,
    )

    relay = None
    if settings.KAFKA_ENABLED:
        await create_kafka_topic(settings.KAFKA_CHANGES_TOPIC, bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
        relay = KafkaChangeRelay(settings.KAFKA_BOOTSTRAP_SERVERS, settings.KAFKA_CHANGES_TOPIC)
        await relay.start()
        backend.realtime.add_relay(relay)

    store = SessionStore(backend)
    await store.initialize()

    app.state.backend = backend
    app.state.session_store = store
    try:
        yield
    finally:
        await store.close()
        if relay is not None:
            backend.realtime.remove_relay(relay)
            await relay.stop()


app = FastAPI(title="OMTII Marketplace", version="1.0.0", lifespan=lifespan)

BackendDep = Annotated[Backend, Depends(get_backend)]


@app.exception_handler(MarketplaceError)
async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
    """Every failed action is reported the same way: its message, or a generic one."""
    logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catches all unhandled exceptions and returns a 500 Internal Server Error.
    """
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


async def _target_roles(backend: Backend, user_id: int) -> list[Role]:
    rows = await backend.table("user_roles").select("role").eq("user_id", user_id).execute()
    return [Role(row["role"]) for row in rows]


# ----------------------------
# Public pages
# ----------------------------

@app.get("/")
async def home(backend: BackendDep):
    return {
        "featured": await catalog.featured_services(backend),
        "categories": await catalog.list_categories(backend),
    }


@app.get("/explore")
async def explore(
    backend: BackendDep,
    q: str | None = None,
    price_min: float | None = None,
    price_max: float | None = None,
    sort: str = "recommended",
):
    if sort not in catalog.SORTS:
        raise HTTPException(status_code=400, detail=f"Unknown sort '{sort}'")
    services = await catalog.explore(backend, q, price_min, price_max, sort)
    return {"services": services, "count": len(services)}


@app.get("/explore/{service_id}")
async def service_detail(service_id: int, backend: BackendDep):
    return await catalog.get_approved_service(backend, service_id)


@app.post("/explore/{service_id}/requests", status_code=201)
async def request_service(
    service_id: int,
    payload: RequestCreate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(get_session_store)],
):
    """
    Send a service request to the vendor of an approved service.

    Raises:
        HTTPException: 503 while the session is loading, 401 when nobody is signed in.
    """
    result = authorize(store.state(), RouteRequirement(), f"/explore/{service_id}")
    if result.decision == Decision.WAIT:
        raise HTTPException(status_code=503, detail="Session is loading.", headers={"Retry-After": "1"})
    if not result.allowed:
        raise HTTPException(status_code=401, detail="Please login to request a service")

    service = await catalog.get_approved_service(backend, service_id)
    request = await create_request(backend, service["id"], store.user_id, payload.message)
    return Notice(notice="Request sent successfully! The vendor will be notified.", data=request)


@app.get("/storage/{bucket}/{path:path}")
async def storage_object(bucket: str, path: str, backend: BackendDep):
    target = backend.storage.resolve(bucket, path)
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Object not found")
    return FileResponse(target)


# ----------------------------
# Authentication
# ----------------------------

@app.post("/register", status_code=201)
async def register(
    form: RegisterForm,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(get_session_store)],
):
    """
    Create an account.

    Args:
        form (RegisterForm): Name, email, password and account type.

    Returns:
        Notice: The welcome notice; ``data.signed_in`` tells whether a
        session was started right away.

    Raises:
        ValidationFailed: If the password breaks the policy.
        HTTPException: If the email is already registered.
    """
    validate_password(form.password)
    try:
        session = await backend.auth.sign_up(
            form.email.strip(),
            form.password,
            {"full_name": form.name.strip(), "account_type": form.account_type.value},
        )
    except RemoteRejected as e:
        if e.code == "already_registered" or "already registered" in (e.message or ""):
            raise HTTPException(status_code=400, detail=ALREADY_REGISTERED)
        raise

    if session is not None:
        await store.wait_ready()
    return Notice(
        notice="Account created successfully! Welcome to OMTII.",
        data={"redirect": "/", "signed_in": session is not None},
    )


@app.post("/login")
async def login(
    form: LoginForm,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(get_session_store)],
):
    try:
        await backend.auth.sign_in_with_password(form.email.strip(), form.password)
    except RemoteRejected as e:
        raise HTTPException(status_code=e.status_code, detail=login_error_message(e))

    # roles decide the landing page, so wait for them
    await store.wait_ready()
    return Notice(
        notice="Welcome back!",
        data={"redirect": post_login_path(store, form.next), "session": store.snapshot()},
    )


@app.post("/logout")
async def logout(store: Annotated[SessionStore, Depends(get_session_store)]):
    await store.sign_out()
    return Notice(notice="Signed out.", data={"redirect": "/"})


@app.get("/me")
async def me(store: Annotated[SessionStore, Depends(get_session_store)]):
    return store.snapshot()


# ----------------------------
# Profile settings
# ----------------------------

@app.get("/profile")
async def get_profile(store: Annotated[SessionStore, Depends(require_login)]):
    return {"email": store.user.email, "profile": store.profile}


@app.patch("/profile")
async def update_profile(
    payload: ProfileUpdate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_login)],
):
    values = payload.model_dump(exclude_unset=True)
    await backend.table("profiles").update(values).eq("id", store.user_id).execute()
    await store.refresh()
    return Notice(notice="Profile updated successfully!", data=store.profile)


@app.post("/profile/avatar")
async def upload_avatar(
    file: UploadFile,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_login)],
):
    uploader = ImageUploader(backend.storage, AVATARS_BUCKET)
    url = await uploader.upload_image(file.filename or "avatar", await file.read(), store.user_id)
    if url is None:
        raise MarketplaceError(uploader.errors[-1] if uploader.errors else "Failed to upload image")
    return Notice(notice="Avatar uploaded! Click Save to update your profile.", data={"avatar_url": url})


# ----------------------------
# Client dashboard
# ----------------------------

async def load_dashboard(store: SessionStore, kind: str) -> dict:
    return await DASHBOARDS[kind](store.backend, store.user_id).load()


@app.get("/client/dashboard")
async def client_dashboard(store: Annotated[SessionStore, Depends(require_client)]):
    return await load_dashboard(store, "client")


async def _own_request(backend: Backend, request_id: int, identity_id: int, party: Party) -> dict:
    request = await get_request(backend, request_id, identity_id, party)
    if request is None:
        raise HTTPException(status_code=404, detail="Service request not found")
    return request


@app.get("/client/requests/{request_id}/messages")
async def client_thread(
    request_id: int,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_client)],
):
    request = await _own_request(backend, request_id, store.user_id, Party.CLIENT)
    return {"request": request, "messages": await fetch_thread(backend, request_id, store.user_id)}


@app.post("/client/requests/{request_id}/messages", status_code=201)
async def client_send_message(
    request_id: int,
    payload: MessageCreate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_client)],
):
    request = await _own_request(backend, request_id, store.user_id, Party.CLIENT)
    message = await send_message(backend, request_id, store.user_id, request["vendor_id"], payload.content)
    return Notice(notice="Message sent.", data=message)


# ----------------------------
# Vendor dashboard
# ----------------------------

@app.get("/vendor/dashboard")
async def vendor_dashboard(store: Annotated[SessionStore, Depends(require_vendor)]):
    return await load_dashboard(store, "vendor")


@app.get("/vendor/services")
async def vendor_services(backend: BackendDep, store: Annotated[SessionStore, Depends(require_vendor)]):
    return await catalog.list_vendor_services(backend, store.user_id)


@app.post("/vendor/services", status_code=201)
async def vendor_create_service(
    payload: ServiceCreate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_vendor)],
):
    service = await catalog.create_service(
        backend, store.user_id, payload.title, payload.description, payload.price, payload.images
    )
    return Notice(notice="Service submitted for approval!", data=service)


@app.post("/vendor/services/images", status_code=201)
async def vendor_upload_images(
    files: list[UploadFile],
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_vendor)],
):
    uploader = ImageUploader(backend.storage, SERVICE_IMAGES_BUCKET)
    contents = [(f.filename or "image", await f.read()) for f in files]
    urls = await uploader.upload_multiple_images(contents, store.user_id)
    return Notice(
        notice=f"Uploaded {len(urls)} of {len(contents)} image(s).",
        data={"urls": urls, "errors": uploader.errors},
    )


@app.patch("/vendor/services/{service_id}")
async def vendor_update_service(
    service_id: int,
    payload: ServiceUpdate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_vendor)],
):
    service = await catalog.update_service(
        backend, store.user_id, service_id, payload.model_dump(exclude_unset=True)
    )
    return Notice(notice="Service updated successfully!", data=service)


@app.delete("/vendor/services/{service_id}")
async def vendor_delete_service(
    service_id: int,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_vendor)],
    confirmed: Annotated[bool, Depends(confirm_service_delete)],
):
    if store.is_super_admin:
        await moderation.delete_service(backend, store, service_id)
    else:
        await catalog.delete_service(backend, store.user_id, service_id)
    return Notice(notice="Service deleted successfully!")


@app.get("/vendor/requests")
async def vendor_requests(backend: BackendDep, store: Annotated[SessionStore, Depends(require_vendor)]):
    return await list_requests(backend, store.user_id, Party.VENDOR)


@app.patch("/vendor/requests/{request_id}/status")
async def vendor_set_request_status(
    request_id: int,
    payload: RequestStatusUpdate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_vendor)],
):
    await _own_request(backend, request_id, store.user_id, Party.VENDOR)
    request = await set_status(backend, request_id, payload.status)
    return Notice(notice=f"Request {payload.status.value}!", data=request)


@app.get("/vendor/requests/{request_id}/messages")
async def vendor_thread(
    request_id: int,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_vendor)],
):
    request = await _own_request(backend, request_id, store.user_id, Party.VENDOR)
    return {"request": request, "messages": await fetch_thread(backend, request_id, store.user_id)}


@app.post("/vendor/requests/{request_id}/messages", status_code=201)
async def vendor_send_message(
    request_id: int,
    payload: MessageCreate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_vendor)],
):
    request = await _own_request(backend, request_id, store.user_id, Party.VENDOR)
    message = await send_message(backend, request_id, store.user_id, request["client_id"], payload.content)
    return Notice(notice="Message sent.", data=message)


# ----------------------------
# Admin dashboard
# ----------------------------

@app.get("/admin/dashboard")
async def admin_dashboard(store: Annotated[SessionStore, Depends(require_admin)]):
    return await load_dashboard(store, "admin")


@app.get("/admin/users")
async def admin_users(
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
    search: str | None = None,
):
    users = moderation.filter_users(await moderation.list_users(backend), search)
    for user in users:
        user["manageable"] = moderation.can_manage_user(store, user["roles"])
        user["assignable_roles"] = moderation.assignable_roles(store, user["roles"])
    return users


@app.patch("/admin/users/{user_id}")
async def admin_update_user(
    user_id: int,
    payload: UserUpdate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
):
    roles = await _target_roles(backend, user_id)
    user = await moderation.update_user(backend, store, user_id, payload.model_dump(exclude_unset=True), roles)
    return Notice(notice="User updated successfully!", data=user)


@app.delete("/admin/users/{user_id}")
async def admin_delete_user(
    user_id: int,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
    confirmed: Annotated[bool, Depends(confirm_user_delete)],
):
    roles = await _target_roles(backend, user_id)
    await moderation.delete_user(backend, store, user_id, roles)
    return Notice(notice="User deleted successfully!")


@app.post("/admin/users/{user_id}/roles", status_code=201)
async def admin_grant_role(
    user_id: int,
    payload: RoleGrant,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
):
    assignment = await moderation.grant_role(backend, store, user_id, payload.role)
    return Notice(notice=f"Added {payload.role.value} role", data=assignment)


@app.delete("/admin/users/{user_id}/roles/{role}")
async def admin_revoke_role(
    user_id: int,
    role: Role,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
):
    await moderation.revoke_role(backend, store, user_id, role)
    return Notice(notice=f"Removed {role.value} role")


@app.get("/admin/services")
async def admin_services(
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
    status: ServiceStatus | None = None,
    search: str | None = None,
):
    return moderation.filter_by_status(await moderation.list_all_services(backend), status, search)


@app.patch("/admin/services/{service_id}")
async def admin_update_service(
    service_id: int,
    payload: AdminServiceUpdate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
):
    service = await moderation.update_service(backend, service_id, payload.model_dump(exclude_unset=True))
    return Notice(notice="Service updated successfully!", data=service)


@app.post("/admin/services/{service_id}/approve")
async def admin_approve_service(
    service_id: int,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
):
    return Notice(notice="Service approved!", data=await moderation.approve_service(backend, service_id))


@app.post("/admin/services/{service_id}/reject")
async def admin_reject_service(
    service_id: int,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
):
    return Notice(notice="Service rejected!", data=await moderation.reject_service(backend, service_id))


@app.delete("/admin/services/{service_id}")
async def admin_delete_service(
    service_id: int,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
    confirmed: Annotated[bool, Depends(confirm_service_delete)],
):
    await moderation.delete_service(backend, store, service_id)
    return Notice(notice="Service deleted successfully!")


@app.get("/admin/categories")
async def admin_categories(
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
    search: str | None = None,
):
    return moderation.filter_categories(await moderation.list_categories(backend), search)


@app.post("/admin/categories", status_code=201)
async def admin_create_category(
    payload: CategoryCreate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
):
    category = await moderation.create_category(
        backend, store.user_id, payload.name, payload.description, payload.icon
    )
    return Notice(notice="Category created successfully!", data=category)


@app.patch("/admin/categories/{category_id}")
async def admin_update_category(
    category_id: int,
    payload: CategoryUpdate,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
):
    category = await moderation.update_category(backend, category_id, payload.model_dump(exclude_unset=True))
    return Notice(notice="Category updated successfully!", data=category)


@app.delete("/admin/categories/{category_id}")
async def admin_delete_category(
    category_id: int,
    backend: BackendDep,
    store: Annotated[SessionStore, Depends(require_admin)],
    confirmed: Annotated[bool, Depends(confirm_category_delete)],
):
    await moderation.delete_category(backend, category_id)
    return Notice(notice="Category deleted successfully!")


# ----------------------------
# Live views
# ----------------------------

def _websocket_store(websocket: WebSocket) -> SessionStore:
    return websocket.app.state.session_store


async def _run_until_first_done(*coroutines) -> None:
    """Run the coroutines until one finishes, then cancel and collect the rest."""
    tasks = [asyncio.ensure_future(c) for c in coroutines]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    for task in done:
        if task.cancelled():
            continue
        error = task.exception()
        if error is not None and not isinstance(error, WebSocketDisconnect):
            raise error


@app.websocket("/ws/requests/{request_id}")
async def request_thread_socket(websocket: WebSocket, request_id: int):
    """
    Live conversation of one service request.

    Sends the history first, then one frame per new message. Inbound
    ``{"content": ...}`` frames are sent as messages from the signed-in
    identity.
    """
    store = _websocket_store(websocket)
    if store.loading or store.user is None:
        await websocket.close(code=POLICY_VIOLATION)
        return
    backend = store.backend
    request = await get_request(backend, request_id, store.user_id, Party.CLIENT)
    if request is None:
        request = await get_request(backend, request_id, store.user_id, Party.VENDOR)
    if request is None:
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()
    thread = MessageThread(
        backend,
        request,
        store.user_id,
        on_message=outbox.put_nowait,
        on_close=lambda: outbox.put_nowait(None),
        session_store=store,
    )

    async def forward() -> None:
        while True:
            message = await outbox.get()
            if message is None:
                return
            await websocket.send_json({"type": "message", "message": jsonable_encoder(message)})

    async def receive() -> None:
        while True:
            frame = await websocket.receive_json()
            try:
                await thread.send(frame.get("content", ""))
            except MarketplaceError as e:
                await websocket.send_json({"type": "error", "detail": e.detail})

    async with thread:
        await websocket.send_json({"type": "history", "messages": jsonable_encoder(thread.messages)})
        await _run_until_first_done(forward(), receive())

    # still connected means the thread was closed from our side
    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close()
    logger.info(f"Thread socket for request {request_id} closed.")


@app.websocket("/ws/dashboard")
async def dashboard_socket(websocket: WebSocket):
    """
    Pushes a fresh dashboard snapshot whenever the identity's data changes.

    The socket is closed once the identity signs out or another one signs in.
    """
    store = _websocket_store(websocket)
    if store.loading or store.user is None:
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()
    changes: asyncio.Queue = asyncio.Queue()
    dashboard = dashboard_for(store, on_change=changes.put_nowait, on_close=lambda: changes.put_nowait(None))

    async def push() -> None:
        while True:
            pending = [await changes.get()]
            # one reload covers every change queued meanwhile
            while not changes.empty():
                pending.append(changes.get_nowait())
            if None in pending:
                return
            await websocket.send_json(
                {"type": "snapshot", "dashboard": dashboard.name, "data": jsonable_encoder(await dashboard.load())}
            )

    async def drain() -> None:
        while True:
            await websocket.receive_text()

    async with dashboard:
        await websocket.send_json(
            {"type": "snapshot", "dashboard": dashboard.name, "data": jsonable_encoder(await dashboard.load())}
        )
        await _run_until_first_done(push(), drain())

    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close()
    logger.info(f"Dashboard socket for {dashboard.identity_id} closed.")
