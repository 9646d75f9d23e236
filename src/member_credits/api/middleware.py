"""
FastAPI/Starlette middleware that charges credits for metered routes.

Flow:
  1. Before request: look up the route in the metered table. Unmetered
     paths pass straight through.
  2. Debit the configured cost for the member named in the request header.
     Insufficient credits short-circuit with 402, unknown members with 404.
  3. The request runs and the remaining balance is attached to the response
     headers.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import InsufficientCreditsError, NotFoundError, PersistenceError
from ..services.metering_service import MeteringService


logger = logging.getLogger(__name__)


class ActionMeteringMiddleware(BaseHTTPMiddleware):
    """
    Debits credits before a metered route runs.

    `metered_paths` maps a request path (exact, or a prefix ending in "/")
    to an `(action_type, cost)` pair.
    """

    def __init__(
        self,
        app: Any,
        metering: MeteringService | Callable[[], MeteringService],
        metered_paths: Mapping[str, Tuple[str, int]],
        *,
        member_id_header: str = "X-Member-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self._metering = metering
        self.metered_paths = dict(metered_paths)
        self.member_id_header = member_id_header
        self.skip_paths = tuple(skip_paths or ())

    @property
    def metering(self) -> MeteringService:
        if isinstance(self._metering, MeteringService):
            return self._metering
        return self._metering()

    def _match(self, path: str) -> Optional[Tuple[str, int]]:
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return None
        if path in self.metered_paths:
            return self.metered_paths[path]
        for prefix, rule in self.metered_paths.items():
            if prefix.endswith("/") and path.startswith(prefix):
                return rule
        return None

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        rule = self._match(request.url.path)
        if rule is None:
            return await call_next(request)
        action_type, cost = rule

        member_id = request.headers.get(self.member_id_header)
        if not member_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing member identification ({self.member_id_header} header)."},
            )

        try:
            result = await self.metering.spend(
                member_id,
                action_type,
                cost=cost,
                metadata={"path": request.url.path, "method": request.method},
                correlation_id=request.headers.get("X-Request-Id"),
            )
        except InsufficientCreditsError as e:
            return JSONResponse(
                status_code=402,
                content={
                    "detail": "Insufficient credits for this request.",
                    "code": "INSUFFICIENT_CREDITS",
                    "required": e.required,
                    "available": e.available,
                },
            )
        except NotFoundError:
            return JSONResponse(status_code=404, content={"detail": "Member not found."})
        except PersistenceError as e:
            logger.error("Metering failed for member %s on %s: %s", member_id, request.url.path, e)
            return JSONResponse(
                status_code=500,
                content={"error": "Database error", "message": str(e)},
            )

        logger.info(
            "Metered %s for member %s",
            action_type,
            member_id,
            extra={"path": request.url.path, "cost": cost},
        )
        request.state.spend_result = result
        response = await call_next(request)
        response.headers["X-Credits-Deducted"] = str(result.credits_spent)
        response.headers["X-Credits-Remaining"] = str(result.credits_remaining)
        return response
