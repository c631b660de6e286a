"""FastAPI application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status

from intake_funnel.api.models import (
    BootRequest,
    EffectModel,
    FunnelResponse,
    InputRequest,
    PageShowRequest,
    UnlockRequest,
)
from intake_funnel.app_logging import configure_logging
from intake_funnel.containers import AppContainer
from intake_funnel.domain.errors import FunnelError
from intake_funnel.services.funnel import FunnelSession
from intake_funnel.services.resumption import BootContext


def create_app(container: AppContainer) -> FastAPI:  # noqa: PLR0915
    """Create a FastAPI app configured with dependencies."""
    configure_logging(container.settings.log_level)
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.post("/funnel/{session_id}/boot")
    async def boot(
        session_id: str, payload: BootRequest, request: Request
    ) -> FunnelResponse:
        """Resolve a page load for a session."""
        state_container: AppContainer = request.app.state.container
        funnel = await state_container.registry.boot(
            session_id,
            BootContext(params=payload.params, authenticated=payload.authenticated),
        )
        resolution = funnel.resolution
        return await _respond(
            funnel, result=resolution.kind.value if resolution else None
        )

    @app.get("/funnel/{session_id}")
    async def describe(session_id: str, request: Request) -> FunnelResponse:
        """Return the session position and any pending effects."""
        funnel = _require_session(request, session_id)
        return await _respond(funnel)

    @app.post("/funnel/{session_id}/advance")
    async def advance(session_id: str, request: Request) -> FunnelResponse:
        """Submit the current step."""
        funnel = _require_session(request, session_id)
        accepted = await funnel.advance()
        return await _respond(funnel, accepted=accepted)

    @app.post("/funnel/{session_id}/retreat")
    async def retreat(session_id: str, request: Request) -> FunnelResponse:
        """Go back one step."""
        funnel = _require_session(request, session_id)
        accepted = await funnel.retreat()
        return await _respond(funnel, accepted=accepted)

    @app.post("/funnel/{session_id}/input")
    async def update_input(
        session_id: str, payload: InputRequest, request: Request
    ) -> FunnelResponse:
        """Record field values for the current step."""
        funnel = _require_session(request, session_id)
        try:
            funnel.update_input(payload.model_dump(exclude_none=True))
        except FunnelError as exc:
            logger.info("Input rejected for %s: %s", session_id, exc.message)
            funnel.view.show_toast(exc.message)
            return await _respond(funnel, accepted=False)
        return await _respond(funnel)

    @app.post("/funnel/{session_id}/unlock")
    async def unlock(
        session_id: str, payload: UnlockRequest, request: Request
    ) -> FunnelResponse:
        """Unlock a report section."""
        funnel = _require_session(request, session_id)
        try:
            outcome = await funnel.unlock(payload.key)
        except FunnelError as exc:
            logger.info("Unlock rejected for %s: %s", session_id, exc.message)
            funnel.view.show_toast(exc.message)
            return await _respond(funnel, accepted=False)
        return await _respond(funnel, result=outcome.value)

    @app.post("/funnel/{session_id}/retry-image")
    async def retry_image(session_id: str, request: Request) -> FunnelResponse:
        """Return to image capture after an image rejection."""
        funnel = _require_session(request, session_id)
        accepted = await funnel.retry_image()
        return await _respond(funnel, accepted=accepted)

    @app.post("/funnel/{session_id}/start-over")
    async def start_over(session_id: str, request: Request) -> FunnelResponse:
        """Abandon the session and return to the first step."""
        funnel = _require_session(request, session_id)
        await funnel.start_over()
        return await _respond(funnel)

    @app.post("/funnel/{session_id}/page-show")
    async def page_show(
        session_id: str, payload: PageShowRequest, request: Request
    ) -> FunnelResponse:
        """Handle a back/forward cache restore."""
        funnel = _require_session(request, session_id)
        resolution = await funnel.page_show(payload.persisted)
        return await _respond(
            funnel,
            accepted=resolution is not None,
            result=resolution.kind.value if resolution else None,
        )

    return app


def _require_session(request: Request, session_id: str) -> FunnelSession:
    container: AppContainer = request.app.state.container
    funnel = container.registry.get(session_id)
    if funnel is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Unknown funnel session"
        )
    return funnel


async def _respond(
    funnel: FunnelSession, accepted: bool = True, result: str | None = None
) -> FunnelResponse:
    await funnel.settle(funnel.options.response_wait_seconds)
    return FunnelResponse(
        accepted=accepted,
        result=result,
        state=funnel.describe(),
        effects=[
            EffectModel(kind=effect.kind, payload=effect.payload)
            for effect in funnel.view.drain()
        ],
    )
