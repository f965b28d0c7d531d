import mimetypes

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from maintrack.dependencies.tickets import BlobStoreDep
from maintrack.tickets.attachments import InvalidAttachmentError

router = APIRouter(prefix="/api/files", tags=["files"])


@router.get("/{filename}", summary="Serve stored stage media")
async def serve_file(filename: str, blobs: BlobStoreDep) -> FileResponse:
    try:
        path = blobs.resolve(filename)
    except InvalidAttachmentError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    media_type, _ = mimetypes.guess_type(path.name)
    return FileResponse(path=str(path), media_type=media_type or "application/octet-stream")
