from fastapi import FastAPI, HTTPException, Query, Response, Request, Depends, Header
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import os
import secrets
from urllib.parse import urlparse
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

import repository
from admission import AdmissionController
from config import settings, VERSION
from db import create_engine, create_session_factory, init_models, ping
from entitlement import EntitlementGate, channel_in_package
from errors import AuthenticationError, AuthorizationError, IPTVError, NotFoundError, iptv_error_handler
from events import EventManager
from hwaccel import hw_accel
from lifecycle import StreamLifecycleManager
from models import (
    HealthCheck,
    PlaylistFormat,
    ServerActionRequest,
    SessionControlRequest,
    StreamEvent,
    StreamState,
    TokenRequest,
    WebhookConfig,
)
from orm import Profile
from playlists import M3U_CONTENT_TYPE, build_playlist, build_xmltv, playlist_headers
from process_registry import InMemoryProcessRegistry, RedisProcessRegistry
from redis_config import get_redis_config, should_use_redis_registry
from remote_exec import RemoteExecutionService
from sessions import SessionRecorder
from supervisor import TranscodeSupervisor
from transcoding import get_profile_manager
from upstream import HLS_CONTENT_TYPE, NO_STORE_HEADERS, UpstreamNormalizer, primary_source
from xtream import XtreamAPI, xtream_error_body

logger = logging.getLogger(__name__)

SEGMENT_CONTENT_TYPES = {
    ".m3u8": HLS_CONTENT_TYPE,
    ".ts": "video/mp2t",
    ".mpd": "application/dash+xml",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
}


def detect_https_from_headers(request: Request) -> bool:
    """
    HTTPS detection from reverse proxy headers.

    Covers X-Forwarded-Proto/Scheme (NGINX, Caddy, Traefik), X-Forwarded-Ssl
    (Cloudflare, load balancers), Front-End-Https (IIS, Azure) and the RFC
    7239 Forwarded header.
    """
    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto and forwarded_proto.lower() == "https":
        return True

    forwarded_scheme = request.headers.get("x-forwarded-scheme")
    if forwarded_scheme and forwarded_scheme.lower() == "https":
        return True

    if request.headers.get("x-forwarded-ssl") == "on":
        return True

    if request.headers.get("front-end-https") == "on":
        return True

    forwarded = request.headers.get("forwarded")
    if forwarded and "proto=https" in forwarded.lower():
        return True

    return request.headers.get("x-forwarded-port") == "443"


def get_public_base_url(request: Request) -> str:
    """
    Base URL used in every link handed to clients (stream_url, playlists,
    Xtream direct_source). Uses PUBLIC_URL when configured, otherwise the
    URL the request arrived on. ROOT_PATH is always appended once.
    """
    root_path = settings.ROOT_PATH or ""
    https_detected = detect_https_from_headers(request)

    if settings.PUBLIC_URL:
        public_url = settings.PUBLIC_URL
        public_with_scheme = public_url if public_url.startswith(('http://', 'https://')) else f"http://{public_url}"
        parsed = urlparse(public_with_scheme)
        scheme = "https" if https_detected else (parsed.scheme or "http")
        host = parsed.hostname or ""
        path = parsed.path or ""
        if root_path and path.startswith(root_path):
            path = path[len(root_path):]

        # Behind an HTTPS proxy the internal port is not reachable from outside
        if parsed.port:
            netloc = f"{host}:{parsed.port}"
        elif https_detected:
            netloc = host
        elif settings.PORT and settings.PORT != 80:
            netloc = f"{host}:{settings.PORT}"
        else:
            netloc = host
        base = f"{scheme}://{netloc}{path.rstrip('/')}"
    else:
        scheme = "https" if https_detected else request.url.scheme
        base = f"{scheme}://{request.url.netloc}"

    return f"{base}{root_path.rstrip('/')}"


def get_client_info(request: Request):
    """Extract client information from request"""
    # X-Forwarded-For can contain multiple IPs: "client, proxy1, proxy2"
    # The first one is the original client
    ip_address = "unknown"
    forwarded_for = request.headers.get("x-forwarded-for")
    real_ip = request.headers.get("x-real-ip")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    elif real_ip:
        ip_address = real_ip.strip()
    elif request.client:
        ip_address = request.client.host

    return {
        "user_agent": request.headers.get("user-agent") or "unknown",
        "ip_address": ip_address
    }


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"{settings.SERVICE_NAME} {VERSION} starting up...")
    hw_accel.log_capabilities()

    engine = create_engine()
    await init_models(engine)
    session_factory = create_session_factory(engine)

    if should_use_redis_registry():
        redis_config = get_redis_config()
        registry = RedisProcessRegistry(redis_config["redis_url"], redis_config["worker_id"])
        await registry.connect()
        logger.info(f"Using Redis process registry (worker {redis_config['worker_id']})")
    else:
        registry = InMemoryProcessRegistry()
        logger.info("Using in-memory process registry")

    event_manager = EventManager()
    await event_manager.start()

    def log_event_handler(event: StreamEvent):
        """Logs every lifecycle event"""
        logger.info(
            f"Event: {event.event_type.value} for stream {event.stream_id} at {event.timestamp}")

    event_manager.add_handler(log_event_handler)

    gate = EntitlementGate()
    normalizer = UpstreamNormalizer()
    supervisor = TranscodeSupervisor(session_factory, registry=registry, hwaccel=hw_accel)
    lifecycle = StreamLifecycleManager(
        session_factory,
        gate=gate,
        admission=AdmissionController(),
        normalizer=normalizer,
        supervisor=supervisor,
        recorder=SessionRecorder(),
        profiles=get_profile_manager(),
        events=event_manager,
    )

    adopted = await supervisor.recover()
    if adopted:
        logger.info(f"Adopted {adopted} running transcoder(s) from the registry")

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.event_manager = event_manager
    app.state.gate = gate
    app.state.normalizer = normalizer
    app.state.supervisor = supervisor
    app.state.lifecycle = lifecycle
    app.state.xtream = XtreamAPI(gate)
    app.state.remote_exec = RemoteExecutionService()

    yield

    # Shutdown
    logger.info(f"{settings.SERVICE_NAME} shutting down...")
    # A durable registry lets the next start adopt running transcoders
    await supervisor.shutdown(stop_processes=registry.name == InMemoryProcessRegistry.name)
    await normalizer.aclose()
    await event_manager.stop()
    await registry.close()
    await engine.dispose()


app = FastAPI(
    title=settings.SERVICE_NAME,
    version=VERSION,
    description="Entitlement-gated IPTV delivery with session control, transcoding and Xtream-compatible catalog",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

app.add_exception_handler(IPTVError, iptv_error_handler)

# Configure CORS to allow all origins for streaming compatibility
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


async def get_db(request: Request):
    async with request.app.state.session_factory() as db:
        yield db


async def get_current_profile(
    request: Request,
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Profile:
    """Subscriber identified by an ``Authorization: Bearer`` access token."""
    return await request.app.state.gate.authenticate_token(db, bearer_token(authorization))


async def verify_operator(
    request: Request,
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)"),
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Operator access. Accepted credentials:
    - X-API-Token header or api_token query parameter equal to API_TOKEN
    - a bearer access token of a profile with the admin role
    """
    provided_token = x_api_token or api_token
    if provided_token and settings.API_TOKEN:
        if secrets.compare_digest(provided_token, settings.API_TOKEN):
            return True
        raise AuthorizationError("Invalid API token")

    token = bearer_token(authorization)
    if token:
        profile = await request.app.state.gate.authenticate_token(db, token)
        if not profile.is_admin:
            raise AuthorizationError("Admin access required")
        return True

    raise AuthenticationError(
        "API token required. Provide token via X-API-Token header or api_token query parameter.")


@app.get("/health", response_model=HealthCheck, dependencies=[Depends(verify_operator)])
async def health_check(request: Request):
    """Health check endpoint with database and process status"""
    database_ok = await ping(request.app.state.session_factory)
    handles = await request.app.state.supervisor.active_handles()
    return HealthCheck(
        status="healthy" if database_ok else "degraded",
        version=VERSION,
        database=database_ok,
        active_processes=len(handles),
        registry=request.app.state.registry.name,
    )


@app.post("/auth/token")
async def issue_access_token(body: TokenRequest, request: Request, db: AsyncSession = Depends(get_db)):
    """Exchange subscriber credentials for a bearer access token"""
    token, expires_at = await request.app.state.gate.issue_token(db, body.username, body.password)
    return {
        "access_token": token,
        "token_type": "bearer",
        "expires_at": expires_at.isoformat(),
    }


@app.post("/session-control")
async def session_control(
    body: SessionControlRequest,
    request: Request,
    profile: Profile = Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    """Start, stop or inspect the caller's stream on a channel"""
    lifecycle: StreamLifecycleManager = request.app.state.lifecycle
    client_info = get_client_info(request)

    if body.action == "start":
        result = await lifecycle.start(
            db,
            profile,
            body.channel_id,
            base_url=get_public_base_url(request),
            quality=body.quality,
            client_ip=body.client_ip or client_info["ip_address"],
            user_agent=body.user_agent or client_info["user_agent"],
        )
        return {
            "success": True,
            "message": result.message,
            "stream_id": result.stream_id,
            "stream_url": result.stream_url,
            "mode": result.mode,
        }

    if body.action == "stop":
        stream_id = await lifecycle.stop(db, profile, body.channel_id)
        return {"success": True, "message": "Stream stopped", "stream_id": stream_id}

    status = await lifecycle.status(db, profile, body.channel_id)
    return {"success": True, **status.model_dump(mode="json")}


async def _live_playlist(request: Request, db: AsyncSession, username, password, channel_ref: str) -> Response:
    gate: EntitlementGate = request.app.state.gate
    profile = await gate.authenticate_credentials(db, username, password)
    entitlement = await gate.check(db, profile, channel_ref)
    manifest = await request.app.state.normalizer.normalize(primary_source(entitlement.channel))

    client_info = get_client_info(request)
    await request.app.state.lifecycle.recorder.open_pass_through(
        db, profile.id, entitlement.channel.id,
        client_ip=client_info["ip_address"],
        user_agent=client_info["user_agent"],
    )
    logger.info(f"Served {manifest.source_format.value} playlist for {entitlement.channel.name} to {username}")
    return Response(content=manifest.content, media_type=manifest.content_type, headers=manifest.headers)


async def _live_redirect(request: Request, db: AsyncSession, username, password, channel_ref: str) -> Response:
    gate: EntitlementGate = request.app.state.gate
    profile = await gate.authenticate_credentials(db, username, password)
    entitlement = await gate.check(db, profile, channel_ref)
    target = await request.app.state.normalizer.direct_target(primary_source(entitlement.channel))
    return RedirectResponse(url=target, status_code=302)


@app.get("/live/{username}/{password}/{channel_ref}.m3u8")
async def live_playlist_path(username: str, password: str, channel_ref: str, request: Request,
                             db: AsyncSession = Depends(get_db)):
    return await _live_playlist(request, db, username, password, channel_ref)


@app.get("/live/{channel_ref}.m3u8")
async def live_playlist_query(
    channel_ref: str,
    request: Request,
    username: Optional[str] = Query(None),
    password: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await _live_playlist(request, db, username, password, channel_ref)


@app.get("/live/{username}/{password}/{channel_ref}.ts")
async def live_ts_path(username: str, password: str, channel_ref: str, request: Request,
                       db: AsyncSession = Depends(get_db)):
    return await _live_redirect(request, db, username, password, channel_ref)


@app.get("/live/{channel_ref}.ts")
async def live_ts_query(
    channel_ref: str,
    request: Request,
    username: Optional[str] = Query(None),
    password: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await _live_redirect(request, db, username, password, channel_ref)


@app.get("/streams/{stream_id}/playlist.m3u8")
async def relay_playlist(stream_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    """Manifest for a relay-mode stream started through session control.
    Every fetch re-checks the owner's entitlement to the channel."""
    stream = await repository.get_stream(db, stream_id)
    if stream is None or stream.state != StreamState.RUNNING.value:
        raise NotFoundError("Stream not found or not running")
    owner = await repository.get_profile(db, stream.user_id) if stream.user_id else None
    gate: EntitlementGate = request.app.state.gate
    entitlement = await gate.check(db, owner, stream.channel_id)
    manifest = await request.app.state.normalizer.normalize(primary_source(entitlement.channel))
    return Response(content=manifest.content, media_type=manifest.content_type, headers=manifest.headers)


@app.get("/hls/{stream_id}/{filename}")
async def transcoded_output(stream_id: str, filename: str, request: Request):
    """Files written by the transcoder for HLS and DASH outputs"""
    if filename in (".", "..") or "/" in filename or "\\" in filename or stream_id in (".", ".."):
        raise NotFoundError("File not found")
    output_dir = request.app.state.supervisor.output_dir
    file_path = os.path.join(output_dir, stream_id, filename)
    if not os.path.isfile(file_path):
        raise NotFoundError("File not found")

    extension = os.path.splitext(filename)[1].lower()
    media_type = SEGMENT_CONTENT_TYPES.get(extension, "application/octet-stream")
    headers = dict(NO_STORE_HEADERS) if extension in (".m3u8", ".mpd") else {}
    return FileResponse(file_path, media_type=media_type, headers=headers)


async def _export_playlist(request: Request, db: AsyncSession, username, password, fmt: str) -> Response:
    try:
        playlist_format = PlaylistFormat(fmt)
    except ValueError:
        return PlainTextResponse(f"Invalid format: {fmt}", status_code=400)

    gate: EntitlementGate = request.app.state.gate
    try:
        profile = await gate.authenticate_credentials(db, username, password)
        entitlement = await gate.check_account(db, profile)
    except IPTVError as e:
        return PlainTextResponse(e.message, status_code=e.status_code)

    channels = [c for c in await repository.list_active_channels(db, by_category=True)
                if channel_in_package(c, entitlement.package)]
    content = build_playlist(channels, username, password, playlist_format, get_public_base_url(request))
    return Response(content=content, media_type=M3U_CONTENT_TYPE, headers=playlist_headers(username))


@app.get("/playlist/{username}/{password}")
async def playlist_path(
    username: str,
    password: str,
    request: Request,
    format: str = Query("hls"),
    db: AsyncSession = Depends(get_db),
):
    return await _export_playlist(request, db, username, password, format)


@app.get("/playlist")
async def playlist_query(
    request: Request,
    username: Optional[str] = Query(None),
    password: Optional[str] = Query(None),
    format: str = Query("hls"),
    db: AsyncSession = Depends(get_db),
):
    return await _export_playlist(request, db, username, password, format)


@app.get("/get.php")
async def get_php(
    request: Request,
    username: Optional[str] = Query(None),
    password: Optional[str] = Query(None),
    type: str = Query("m3u_plus"),
    output: str = Query("m3u8"),
    db: AsyncSession = Depends(get_db),
):
    """Xtream-style playlist download; ``output`` picks the delivery format"""
    fmt = PlaylistFormat.MPEGTS.value if output == "ts" else PlaylistFormat.HLS.value
    return await _export_playlist(request, db, username, password, fmt)


async def _xtream(request: Request, db: AsyncSession) -> Response:
    params = dict(request.query_params)
    try:
        payload = await request.app.state.xtream.dispatch(
            db, params.get("username"), params.get("password"), params, get_public_base_url(request))
    except (AuthenticationError, AuthorizationError) as e:
        return JSONResponse(status_code=e.status_code, content=xtream_error_body(e.message))
    return JSONResponse(content=payload)


@app.get("/player_api.php")
async def player_api(request: Request, db: AsyncSession = Depends(get_db)):
    return await _xtream(request, db)


@app.get("/xtream-api")
async def xtream_api(request: Request, db: AsyncSession = Depends(get_db)):
    return await _xtream(request, db)


async def _xmltv(request: Request, db: AsyncSession, username, password) -> Response:
    gate: EntitlementGate = request.app.state.gate
    try:
        profile = await gate.authenticate_credentials(db, username, password)
        entitlement = await gate.check_account(db, profile)
    except IPTVError as e:
        return PlainTextResponse(e.message, status_code=e.status_code)

    channels = [c for c in await repository.list_active_channels(db)
                if channel_in_package(c, entitlement.package)]
    programmes = await repository.list_programmes(db)
    content = build_xmltv(channels, programmes, generator=settings.SERVICE_NAME)
    return Response(content=content, media_type="application/xml")


@app.get("/xmltv.php")
async def xmltv_php(
    request: Request,
    username: Optional[str] = Query(None),
    password: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await _xmltv(request, db, username, password)


@app.get("/epg.xml")
async def epg_xml(
    request: Request,
    username: Optional[str] = Query(None),
    password: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await _xmltv(request, db, username, password)


@app.post("/admin/servers")
async def server_action(
    body: ServerActionRequest,
    request: Request,
    profile: Profile = Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    """Operator remote-execution channel (store/retrieve/test_connection/execute_command)"""
    client_info = get_client_info(request)
    return await request.app.state.remote_exec.handle(
        db, profile, body, client_info["ip_address"], client_info["user_agent"])


@app.get("/streams/{stream_id}/logs", dependencies=[Depends(verify_operator)])
async def get_stream_logs(stream_id: str, request: Request):
    """Captured transcoder output for a stream"""
    return PlainTextResponse(request.app.state.supervisor.get_logs(stream_id))


@app.post("/streams/{stream_id}/stop", dependencies=[Depends(verify_operator)])
async def force_stop_stream(stream_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    """Stop any stream by id, including ones whose transcoder this instance lost track of"""
    await request.app.state.lifecycle.force_stop(db, stream_id)
    return {"success": True, "message": "Stream stopped", "stream_id": stream_id}


# Webhook Management Endpoints


@app.post("/webhooks", dependencies=[Depends(verify_operator)])
async def add_webhook(webhook: WebhookConfig, request: Request):
    """Add a new webhook configuration"""
    request.app.state.event_manager.add_webhook(webhook)
    return {
        "message": "Webhook added successfully",
        "webhook_url": str(webhook.url),
        "events": [event.value for event in webhook.events]
    }


@app.get("/webhooks", dependencies=[Depends(verify_operator)])
async def list_webhooks(request: Request):
    """List all configured webhooks"""
    webhooks = [
        {
            "url": str(wh.url),
            "events": [event.value for event in wh.events],
            "timeout": wh.timeout,
            "retry_attempts": wh.retry_attempts
        }
        for wh in request.app.state.event_manager.webhooks
    ]
    return {"webhooks": webhooks}


@app.delete("/webhooks", dependencies=[Depends(verify_operator)])
async def remove_webhook(request: Request, webhook_url: str = Query(..., description="Webhook URL to remove")):
    """Remove a webhook configuration"""
    if request.app.state.event_manager.remove_webhook(webhook_url):
        return {"message": f"Webhook {webhook_url} removed successfully"}
    raise HTTPException(status_code=404, detail="Webhook not found")
