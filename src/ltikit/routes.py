"""
HTTP endpoints.

Tool role (mounted under ``route_prefix``, default ``/lti/provider``):

    GET|POST /login       - LTI 1.3 third-party initiated login
    POST     /launch      - LTI 1.0 or 1.3 launch
    GET      /jwks        - Tool public keys
    GET      /register    - LTI 1.3 dynamic registration
    GET      /config.xml  - LTI 1.0 cartridge

Platform role (mounted under ``consumer_route_prefix``, default ``/lti/consumer``):

    POST     /grade       - Basic Outcomes service
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from .errors import (
    ConfigurationError,
    LTIError,
    RecordNotFoundError,
    ReplayError,
    TrustError,
    UpstreamError,
    ValidationError,
)
from .lti13 import auto_submit_form
from .settings import Settings
from .toolkit import LTIToolkit

logger = logging.getLogger(__name__)

provider_router = APIRouter(tags=["lti-provider"])
consumer_router = APIRouter(tags=["lti-consumer"])

# Singleton toolkit (initialized in app lifespan)
_toolkit: LTIToolkit | None = None

REGISTRATION_COMPLETE = """<!doctype html>
<html>
<head><title>Registration Complete</title></head>
<body>
  <p>Registration complete.</p>
  <script>(window.opener || window.parent).postMessage({subject: "org.imsglobal.lti.close"}, "*");</script>
</body>
</html>
"""


def init_toolkit(toolkit: LTIToolkit) -> None:
    """Called during FastAPI startup."""
    global _toolkit
    _toolkit = toolkit
    logger.info("LTI toolkit initialized")


def get_toolkit() -> LTIToolkit:
    """Get the toolkit singleton."""
    if _toolkit is None:
        raise RuntimeError("LTI toolkit not initialized. Call init_toolkit() first.")
    return _toolkit


def clear_toolkit() -> None:
    global _toolkit
    _toolkit = None


async def _get_request_data(request: Request) -> dict[str, str]:
    """Query parameters merged with the form body, body winning."""
    data = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        data.update({key: value for key, value in form.items() if isinstance(value, str)})
    return data


async def _get_form_data(request: Request) -> dict[str, str]:
    """Form body only; the query string is signed as part of the request URL."""
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _request_url(request: Request) -> str:
    """Path and query of the request, resolved against ``domain_name`` when signing."""
    url = request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


# ---------------------------------------------------------------------------
# Tool role
# ---------------------------------------------------------------------------


@provider_router.api_route("/login", methods=["GET", "POST"])
async def lti_login(request: Request):
    """Answer the platform's login initiation with an auto-submitting auth request."""
    toolkit = get_toolkit()
    result = await toolkit.login(await _get_request_data(request))
    return HTMLResponse(
        auto_submit_form(result["url"], result["form"]),
        headers={"Content-Security-Policy": f"form-action {result['url']}"},
    )


@provider_router.post("/launch")
async def lti_launch(request: Request):
    """
    Validate a launch and hand it to the tool.

    A string returned by the tool's callback is treated as a redirect
    target; a Response is returned as-is.
    """
    toolkit = get_toolkit()
    body = await _get_form_data(request)
    result = await toolkit.launch(body, request.method, _request_url(request), request)

    if isinstance(result, Response):
        return result
    if isinstance(result, str) and result:
        return RedirectResponse(result, status_code=302)
    logger.error("Launch callback returned %r", result)
    return JSONResponse({"detail": "Invalid Request"}, status_code=400)


@provider_router.get("/jwks")
async def lti_jwks():
    """Public keys platforms use to verify tool-signed JWTs."""
    return JSONResponse(await get_toolkit().jwks())


@provider_router.get("/register")
async def lti_register(request: Request):
    """Run dynamic registration and tell the platform's window to close."""
    await get_toolkit().dynamic_registration(dict(request.query_params))
    return HTMLResponse(REGISTRATION_COMPLETE)


@provider_router.get("/config.xml")
async def lti_config():
    return Response(get_toolkit().lti10_config(), media_type="application/xml")


# ---------------------------------------------------------------------------
# Platform role
# ---------------------------------------------------------------------------


@consumer_router.post("/grade")
async def lti_grade(request: Request):
    """Basic Outcomes service. Always 200; status lives in the XML."""
    toolkit = get_toolkit()
    raw_body = await request.body()
    content = await toolkit.basic_outcomes(
        dict(request.headers), raw_body, _request_url(request), request
    )
    return Response(content, media_type="application/xml")


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

_STATUS = {
    ValidationError: 400,
    ReplayError: 400,
    TrustError: 400,
    RecordNotFoundError: 404,
    UpstreamError: 502,
    ConfigurationError: 500,
}


async def lti_error_handler(request: Request, exc: LTIError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _STATUS.items() if isinstance(exc, cls)), 400
    )
    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse({"detail": exc.message}, status_code=status_code)


def include_lti_routes(app: FastAPI, settings: Settings) -> None:
    """Mount both routers under the configured prefixes and map LTI errors."""
    app.include_router(provider_router, prefix=settings.route_prefix)
    app.include_router(consumer_router, prefix=settings.consumer_route_prefix)
    app.add_exception_handler(LTIError, lti_error_handler)
