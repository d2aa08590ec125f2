"""
Meme Routes

HTTP face of the meme generator: the chat layer posts a command here and
gets back either image bytes or a one-line error in `detail`.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request, Response, status

from src.api.routes.meme.models import (
    ImageToolRequest,
    MemeGenerateRequest,
    RefreshResponse,
    TemplateSearchResponse,
    TemplateSummary,
)
from src.services.meme.errors import (
    BackendError,
    ImageFetchError,
    ToolsUnavailable,
    UserFacingError,
)
from src.services.meme.generator import NOT_READY_MESSAGE, MemeGenerator

router = APIRouter(prefix="/memes", tags=["memes"])


def _generator(request: Request) -> MemeGenerator:
    generator: Optional[MemeGenerator] = getattr(request.app.state, "meme_generator", None)
    if generator is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, NOT_READY_MESSAGE)
    return generator


def _to_http(error: UserFacingError) -> HTTPException:
    if error.not_found:
        code = status.HTTP_404_NOT_FOUND
    elif error.user_correctable:
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error.cause, ToolsUnavailable):
        code = status.HTTP_501_NOT_IMPLEMENTED
    elif isinstance(error.cause, (BackendError, ImageFetchError)):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HTTPException(code, error.message)


def _image_response(data: bytes) -> Response:
    # GIF and PNG both occur; let the client sniff the bytes
    media_type = "image/gif" if data[:4] == b"GIF8" else "image/png"
    return Response(content=data, media_type=media_type)


@router.post("/generate")
async def generate_meme(body: MemeGenerateRequest, request: Request) -> Response:
    """Render one meme from a chat command."""
    generator = _generator(request)
    try:
        data = await generator.create_meme(body.invoker, body.key, body.nodes, body.quoted)
    except UserFacingError as e:
        raise _to_http(e) from e
    return _image_response(data)


@router.get("/search", response_model=TemplateSearchResponse)
async def search_templates(
    request: Request, q: str, scope: Optional[str] = None
) -> TemplateSearchResponse:
    generator = _generator(request)
    try:
        templates = generator.search(q, scope)
    except UserFacingError as e:
        raise _to_http(e) from e
    return TemplateSearchResponse(
        query=q,
        templates=[
            TemplateSummary.model_validate(t.model_dump(include=set(TemplateSummary.model_fields)))
            for t in templates
        ],
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_templates(request: Request) -> RefreshResponse:
    generator = _generator(request)
    try:
        count = await generator.refresh()
    except UserFacingError as e:
        raise _to_http(e) from e
    fetched_at = generator.cache.fetched_at if generator.cache else None
    return RefreshResponse(count=count, fetched_at=fetched_at)


@router.get("/{key}/preview")
async def preview_template(request: Request, key: str, scope: Optional[str] = None) -> Response:
    generator = _generator(request)
    try:
        data = await generator.preview(key, scope)
    except UserFacingError as e:
        raise _to_http(e) from e
    return _image_response(data)


@router.post("/tools/{operation}")
async def run_image_tool(operation: str, body: ImageToolRequest, request: Request) -> Response:
    """Apply one image operation (flip_horizontal, rotate, ...) to the command's image."""
    generator = _generator(request)
    try:
        data = await generator.image_tool(body.invoker, operation, body.nodes, body.quoted)
    except UserFacingError as e:
        raise _to_http(e) from e
    return _image_response(data)
