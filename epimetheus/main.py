"""
Epimetheus - FastAPI Application
Read-only health endpoints over cluster nodes, their node-agent services,
the etcd members and the pods scheduled on them
"""

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from email.utils import formatdate
from typing import Any, Awaitable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .agent import FanOutInvoker, agent_connection
from .config import ServiceConfig, parse_size
from .directory import NodeDirectory, kubernetes_connection
from .errors import (
    AgentConnectionError,
    ConfigurationError,
    DirectoryError,
    NodeNotFoundError,
    ServiceNotFoundError,
)
from .fetchers import ClusterFetcher
from .health import (
    evaluate_consensus_alarms,
    evaluate_consensus_status,
    evaluate_node_conditions,
    evaluate_services,
    evaluate_workloads,
    select_workloads,
)
from .metrics import HTTP_REQUESTS
from .models import HealthReport
from .responses import STATUS_OK, assemble, error_response, evaluate_result
from .tracing import setup_tracing, shutdown_tracing

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)
access_logger = logging.getLogger("epimetheus.access")

CONTROL_PLANE_ROLE = "control-plane"
DISCONNECT_POLL_SECONDS = 0.5
CLIENT_CLOSED_REQUEST = 499

security = HTTPBasic()


class ClientDisconnected(Exception):
    """The HTTP client went away before the response was ready."""


# =============================================================================
# Dependencies
# =============================================================================


def get_config(request: Request) -> ServiceConfig:
    return request.app.state.config


def get_fetcher(request: Request) -> ClusterFetcher:
    return request.app.state.fetcher


def get_directory(request: Request) -> NodeDirectory:
    return request.app.state.directory


def require_auth(
    credentials: HTTPBasicCredentials = Depends(security),
    config: ServiceConfig = Depends(get_config),
) -> str:
    """Basic auth against the configured account."""
    user_ok = secrets.compare_digest(
        credentials.username.encode("utf-8"), config.username.encode("utf-8")
    )
    password_ok = secrets.compare_digest(
        credentials.password.encode("utf-8"), config.password.encode("utf-8")
    )
    if not (user_ok and password_ok):
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


async def until_disconnected(request: Request, work: Awaitable[Any]) -> Any:
    """Await ``work`` unless the client disconnects first, then cancel it."""
    task = asyncio.ensure_future(work)

    async def watch() -> None:
        while not await request.is_disconnected():
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    watcher = asyncio.ensure_future(watch())
    try:
        await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if not watcher.done():
            watcher.cancel()

    if task.done():
        return task.result()

    task.cancel()
    logger.info("Client disconnected from %s, cancelled pending fetch", request.url.path)
    raise ClientDisconnected()


async def resolve_targets(
    directory: NodeDirectory,
    name: Optional[str] = None,
    role: str = "",
) -> list[str]:
    """Address of the named node, or of every node carrying ``role``."""
    if name:
        node = await directory.get_node(name)
        return [node.address]
    return await directory.addresses(role)


# =============================================================================
# Application
# =============================================================================


def create_app(
    config: Optional[ServiceConfig] = None,
    fetcher: Optional[ClusterFetcher] = None,
    directory: Optional[NodeDirectory] = None,
) -> FastAPI:
    """Build the application.

    Connections are created lazily on the first request, so building the app
    never touches the network. Tests pass their own fetcher and directory.
    """
    config = config or ServiceConfig.from_env()
    agent = kube = None
    if fetcher is None or directory is None:
        kube = kubernetes_connection()
        agent = agent_connection(config.talosconfig, config.agent_port)
    if directory is None:
        directory = NodeDirectory(kube)
    if fetcher is None:
        fetcher = ClusterFetcher(
            FanOutInvoker(agent, deadline=config.rpc_deadline, interval=config.retry_interval),
            FanOutInvoker(kube, deadline=config.rpc_deadline, interval=config.retry_interval),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_tracing(service_name="epimetheus")
        yield
        for connection in (agent, kube):
            if connection is not None:
                await connection.close()
        shutdown_tracing()

    app = FastAPI(
        title="Epimetheus",
        description="Health checks for cluster nodes and their node-agent services",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.fetcher = fetcher
    app.state.directory = directory

    if config.password_generated:
        logger.warning(
            "Using randomly generated credentials: %s:%s", config.username, config.password
        )

    _install_middleware(app)
    _install_error_handlers(app)
    app.include_router(_anonymous_routes())
    app.include_router(_v1_routes())
    return app


def _install_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def access_log(request: Request, call_next):
        start = time.perf_counter()
        response = None
        error_message = ""
        try:
            response = await call_next(request)
        except Exception as e:
            error_message = str(e) or type(e).__name__
            raise
        finally:
            latency = time.perf_counter() - start
            status = response.status_code if response is not None else 500
            HTTP_REQUESTS.labels(request.method, str(status)).inc()
            access_logger.info(
                '%s - [%s] "%s %s HTTP/%s %d %.3fms "%s" %s"',
                request.client.host if request.client else "-",
                formatdate(usegmt=True),
                request.method,
                request.url.path,
                request.scope.get("http_version", "1.1"),
                status,
                latency * 1000,
                request.headers.get("user-agent", ""),
                error_message,
            )
        return response


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NodeNotFoundError)
    async def node_not_found(request: Request, exc: NodeNotFoundError):
        return error_response(exc, status=404)

    @app.exception_handler(DirectoryError)
    async def directory_error(request: Request, exc: DirectoryError):
        logger.error("Directory lookup failed for %s: %s", request.url.path, exc)
        return error_response(exc)

    @app.exception_handler(AgentConnectionError)
    async def agent_connection_error(request: Request, exc: AgentConnectionError):
        logger.error("Node agent unreachable for %s: %s", request.url.path, exc)
        return error_response(exc)

    @app.exception_handler(ConfigurationError)
    async def bad_parameter(request: Request, exc: ConfigurationError):
        return error_response(exc, status=400)

    @app.exception_handler(ClientDisconnected)
    async def client_disconnected(request: Request, exc: ClientDisconnected):
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            content = {"message": "Page not found"}
        elif exc.status_code == 405:
            content = {"message": "Method not allowed"}
        else:
            content = {"message": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.error("Error serving %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"error": str(exc)})


# =============================================================================
# Routes
# =============================================================================


def _anonymous_routes() -> APIRouter:
    router = APIRouter()

    @router.get("/ping")
    async def ping():
        """Liveness and readiness probe"""
        return {"message": "pong"}

    @router.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return router


def _v1_routes() -> APIRouter:
    router = APIRouter(prefix="/v1", dependencies=[Depends(require_auth)])

    @router.get("/service")
    @router.get("/node/{name}/service")
    async def get_service_list(
        request: Request,
        name: Optional[str] = None,
        directory: NodeDirectory = Depends(get_directory),
        fetcher: ClusterFetcher = Depends(get_fetcher),
    ):
        """State and health of every node-agent service"""
        targets = await resolve_targets(directory, name)
        result = await until_disconnected(request, fetcher.service_list(targets))
        return evaluate_result("service", "services", result, evaluate_services)

    @router.get("/service/{service}")
    @router.get("/node/{name}/service/{service}")
    async def get_service(
        request: Request,
        service: str,
        name: Optional[str] = None,
        directory: NodeDirectory = Depends(get_directory),
        fetcher: ClusterFetcher = Depends(get_fetcher),
    ):
        """State and health of one service on every node"""
        targets = await resolve_targets(directory, name)
        result = await until_disconnected(request, fetcher.service_info(targets, service))
        if result.complete and not result.records:
            return error_response(
                ServiceNotFoundError(f"service {service!r} not found", service=service)
            )
        return evaluate_result("service", "service", result, evaluate_services)

    @router.get("/etcd/status")
    async def get_etcd_status(
        request: Request,
        min_db_size: Optional[str] = Query(None, alias="minDbSize"),
        config: ServiceConfig = Depends(get_config),
        directory: NodeDirectory = Depends(get_directory),
        fetcher: ClusterFetcher = Depends(get_fetcher),
    ):
        """Leader agreement and fragmentation of the etcd members"""
        threshold = parse_size(min_db_size) if min_db_size else config.min_db_size
        targets = await resolve_targets(directory, role=CONTROL_PLANE_ROLE)
        result = await until_disconnected(request, fetcher.etcd_status(targets))
        return evaluate_result(
            "etcd_status",
            "status",
            result,
            lambda members: evaluate_consensus_status(members, min_db_size=threshold),
        )

    @router.get("/etcd/alarms")
    async def get_etcd_alarms(
        request: Request,
        directory: NodeDirectory = Depends(get_directory),
        fetcher: ClusterFetcher = Depends(get_fetcher),
    ):
        """Alarms raised by the etcd members"""
        targets = await resolve_targets(directory, role=CONTROL_PLANE_ROLE)
        result = await until_disconnected(request, fetcher.etcd_alarms(targets))
        if result.complete and not result.records:
            return JSONResponse(
                status_code=STATUS_OK,
                content={"message": "No alarms present", "alarms": [], "errors": []},
            )
        return evaluate_result("etcd_alarms", "alarms", result, evaluate_consensus_alarms)

    @router.get("/pod")
    @router.get("/pod/{namespace}")
    @router.get("/node/{name}/pod")
    @router.get("/node/{name}/pod/{namespace}")
    async def get_pods(
        request: Request,
        name: Optional[str] = None,
        namespace: str = "",
        static: bool = False,
        fetcher: ClusterFetcher = Depends(get_fetcher),
    ):
        """Readiness of pods, optionally only static pods"""
        result = await until_disconnected(request, fetcher.workload_list(name, namespace))
        if not result.usable:
            return error_response(result.error)
        pods = select_workloads(result.records, static_only=static)
        report = evaluate_workloads(pods)
        extra = [str(result.error)] if result.error is not None else []
        return assemble("pod", "pods", pods, report, extra)

    @router.get("/node")
    async def get_nodes(
        role: str = "",
        directory: NodeDirectory = Depends(get_directory),
    ):
        """Known nodes, optionally filtered by role"""
        nodes = await directory.list_nodes(role)
        return JSONResponse(status_code=STATUS_OK, content=jsonable_encoder(nodes))

    @router.get("/node/{name}")
    async def get_node_status(
        name: str,
        directory: NodeDirectory = Depends(get_directory),
    ):
        """Conditions of one node"""
        node = await directory.get_node_conditions(name)
        report: HealthReport = evaluate_node_conditions(node)
        return assemble("node", "node", node, report)

    @router.get("/time/{server}")
    async def get_time_check(
        request: Request,
        server: str,
        fetcher: ClusterFetcher = Depends(get_fetcher),
    ):
        """Clock of the local node compared against a time server"""
        result = await until_disconnected(request, fetcher.time_check(server))
        if not result.usable:
            return error_response(result.error)
        errors = [str(result.error)] if result.error is not None else []
        return JSONResponse(
            status_code=STATUS_OK,
            content={"time": jsonable_encoder(result.records), "errors": errors},
        )

    @router.get("/node/{name}/info")
    async def get_node_system_info(
        request: Request,
        name: str,
        directory: NodeDirectory = Depends(get_directory),
        fetcher: ClusterFetcher = Depends(get_fetcher),
    ):
        """Hardware system information reported by one node"""
        node = await directory.get_node(name)
        result = await until_disconnected(request, fetcher.node_system_info(node.address))
        if not result.complete:
            return error_response(result.error)
        return JSONResponse(status_code=STATUS_OK, content=jsonable_encoder(result.records))

    @router.get("/node/{name}/metadata")
    async def get_node_metadata(
        request: Request,
        name: str,
        directory: NodeDirectory = Depends(get_directory),
        fetcher: ClusterFetcher = Depends(get_fetcher),
    ):
        """Platform metadata reported by one node"""
        node = await directory.get_node(name)
        result = await until_disconnected(request, fetcher.node_platform_metadata(node.address))
        if not result.complete:
            return error_response(result.error)
        return JSONResponse(status_code=STATUS_OK, content=jsonable_encoder(result.records))

    @router.get("/images")
    async def get_images(
        request: Request,
        directory: NodeDirectory = Depends(get_directory),
        fetcher: ClusterFetcher = Depends(get_fetcher),
    ):
        """Container images present on every node"""
        targets = await resolve_targets(directory)
        result = await until_disconnected(request, fetcher.image_list(targets))
        if not result.usable:
            return error_response(result.error)
        errors = [str(result.error)] if result.error is not None else []
        return JSONResponse(
            status_code=STATUS_OK,
            content={"images": jsonable_encoder(result.records), "errors": errors},
        )

    return router


app = create_app()


def main() -> None:
    import uvicorn

    config: ServiceConfig = app.state.config
    logging.getLogger().setLevel(config.log_level)
    proxies = config.trusted_proxies or []
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        access_log=False,
        proxy_headers=bool(proxies),
        forwarded_allow_ips=",".join(proxies) if proxies else None,
    )


if __name__ == "__main__":
    main()
