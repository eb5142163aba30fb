import uvicorn
import time
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from runnerctl.api.webhook import router as webhook_router
from runnerctl.api.status import router as status_router
from runnerctl.agents.lifecycle_controller import RunnerLifecycleController
from runnerctl.core import config
from runnerctl.core.errors import BootstrapFailure, ProvisionerError
from runnerctl.executor.docker_provisioner import DockerProvisioner
from runnerctl.services.identity_registry import IdentityRegistry
from runnerctl.services.image_bootstrap import ensure_runner_image
from runnerctl.utils.logging_config import resolve_log_level, setup_logging

setup_logging(level=resolve_log_level(config.LOG_LEVEL), log_dir=config.LOG_DIR)
logger = logging.getLogger("main")


# ---------------------------------------------------------------------------
# Lifespan: bootstrap → recover → serve → drain
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        provisioner = DockerProvisioner.from_env(timeout=config.DOCKER_CLIENT_TIMEOUT)
    except ProvisionerError as e:
        raise BootstrapFailure(str(e)) from e

    # Fatal on failure: nothing is served without the runner image
    ensure_runner_image(
        provisioner,
        config.RUNNER_IMAGE,
        auth_config=config.registry_auth_config(),
        always_pull=config.ALWAYS_PULL_IMAGE,
    )

    controller = RunnerLifecycleController(
        provisioner,
        IdentityRegistry(
            completed_ttl=config.COMPLETED_RUN_TTL,
            max_completed=config.MAX_COMPLETED_RUNS,
        ),
        image=config.RUNNER_IMAGE,
        github_token=config.GITHUB_TOKEN,
        allow_dind=config.ALLOW_DIND,
        provisioner_timeout=config.PROVISIONER_TIMEOUT,
    )
    await controller.recover()
    app.state.controller = controller

    maintenance = asyncio.create_task(
        controller.run_maintenance(config.MAINTENANCE_INTERVAL, config.RUNNER_MAX_AGE)
    )
    logger.info("Webhook controller ready | image=%s | dind=%s", config.RUNNER_IMAGE, config.ALLOW_DIND)
    if not config.WEBHOOK_SECRET:
        logger.warning("WEBHOOK_SECRET is not set; deliveries are NOT authenticated")

    try:
        yield
    finally:
        maintenance.cancel()
        await asyncio.gather(maintenance, return_exceptions=True)
        await controller.drain(config.SHUTDOWN_GRACE_PERIOD)
        logger.info("Webhook controller stopped")


app = FastAPI(title="Ephemeral Runner Controller", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Incoming: {request.method} {request.url.path} from {client_host}")

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise e

app.add_middleware(LoggingMiddleware)

# Register routers
app.include_router(webhook_router, tags=["Webhook"])
app.include_router(status_router, tags=["Status"])

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        timeout_graceful_shutdown=int(config.SHUTDOWN_GRACE_PERIOD),
    )
