from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import RecoveryRuntime, build_runtime, router
from .config import get_settings, runtime_secret_issues
from .scheduler import start_scheduler
from .vault import CriticalVaultError

logger = logging.getLogger(__name__)


def create_app(runtime: RecoveryRuntime | None = None) -> FastAPI:
    settings = runtime.settings if runtime is not None else get_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set ENCRYPTION_KEY to a 32+ character secret "
                + "and configure the selected ledger and mailer backends."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    if runtime is None:
        try:
            runtime = build_runtime(settings)
        except CriticalVaultError as exc:
            raise RuntimeError(f"vault unavailable, refusing to start: {exc}") from exc
    if not runtime.vault.self_test():
        raise RuntimeError("vault self-test failed, refusing to start")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        handle = None
        if settings.scheduler_enabled:
            handle = start_scheduler(
                runtime.sentinel,
                scan_interval_seconds=settings.scan_interval_seconds,
                dispatch_interval_seconds=settings.dispatch_interval_seconds,
                poll_interval_seconds=settings.scan_job_poll_seconds,
            )
        try:
            yield
        finally:
            if handle is not None:
                handle.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
