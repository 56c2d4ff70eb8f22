"""
Detection Router - full perception pass on one uploaded image.

Endpoints:
- POST /detect - face, body, hand, object and gesture results for one image

Per-call options are sent as a JSON object in the optional 'config' form
field and merged into the service's current detection configuration, e.g.
    config={"object": {"enabled": true, "minConfidence": 0.3}, "async": false}
"""

import logging
from typing import Annotated

import orjson
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import ORJSONResponse

from omniperceive.core.exceptions import ImageConversionError
from omniperceive.schemas.results import ErrorDescriptor
from omniperceive.services.orchestrator import Orchestrator
from omniperceive.services.preprocess import decode_image


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix='/detect',
    tags=['Detection'],
    default_response_class=ORJSONResponse,
)


def get_orchestrator(request: Request) -> Orchestrator:
    """Orchestrator owned by the running application."""
    return request.app.state.orchestrator


def _parse_overrides(config: str | None) -> dict | None:
    if not config:
        return None
    try:
        overrides = orjson.loads(config)
    except orjson.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f'config is not valid JSON: {e}') from e
    if not isinstance(overrides, dict):
        raise HTTPException(status_code=400, detail='config must be a JSON object')
    return overrides


@router.post('')
async def detect(
    image: Annotated[UploadFile, File(description='Image file (JPEG/PNG)')],
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    config: Annotated[str | None, Form(description='JSON detection overrides')] = None,
):
    """
    Run every enabled capability on an image.

    Args:
        image: Image file (JPEG, PNG)
        config: Optional JSON object of detection overrides

    Returns:
        Result with face, body, hand, gesture, object and performance, or a
        400 response carrying the error descriptor
    """
    filename = image.filename or 'uploaded_image'
    overrides = _parse_overrides(config)

    image_bytes = await image.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail='Empty image file')

    try:
        frame = decode_image(image_bytes)
    except ImageConversionError as e:
        logger.warning(f'Invalid image {filename}: {e}')
        return ORJSONResponse(status_code=400, content=ErrorDescriptor.from_exception(e).to_dict())

    result = await orchestrator.detect(frame, overrides)
    if isinstance(result, ErrorDescriptor):
        logger.warning(f'Detection failed for {filename}: {result.kind}: {result.error}')
        return ORJSONResponse(status_code=400, content=result.to_dict())

    return {
        'filename': filename,
        'image': {'width': int(frame.shape[1]), 'height': int(frame.shape[0])},
        **result.to_dict(),
    }
