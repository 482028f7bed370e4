"""Import API routes."""

from fastapi import APIRouter, Depends, HTTPException, UploadFile

from canopy.importer.schemas import ImportResponse
from canopy.importer.service import ImportFormatError, ImportService

router = APIRouter(prefix="/api/import", tags=["import"])


def get_import_service() -> ImportService:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("ImportService not configured")


@router.post("")
async def import_snapshot(
    file: UploadFile,
    service: ImportService = Depends(get_import_service),
) -> ImportResponse:
    """Restore an exported snapshot file. Existing rows with the same keys are overwritten."""
    content = await file.read()
    try:
        return await service.import_json(content)
    except ImportFormatError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
