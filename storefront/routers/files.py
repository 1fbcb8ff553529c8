from fastapi import APIRouter
from fastapi.responses import FileResponse

from storefront.services.file_service import CACHE_CONTROL, content_type_for, resolve_upload

router = APIRouter(prefix="/files", tags=["Files"])


@router.get("/{filename:path}")
def get_file(filename: str):
    """
    Serve an uploaded asset. Paths containing `..` are rejected.
    """
    path = resolve_upload(filename)
    return FileResponse(
        path,
        media_type=content_type_for(path.name),
        headers={"Cache-Control": CACHE_CONTROL},
    )
