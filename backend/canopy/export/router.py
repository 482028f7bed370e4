"""Export API routes."""

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse

from canopy.export.service import ExportService
from canopy.trees.service import NotFoundError

router = APIRouter(prefix="/api/export", tags=["export"])


def get_export_service() -> ExportService:
    """Dependency placeholder, overridden at startup."""
    raise RuntimeError("ExportService not configured")


@router.get("")
async def export_snapshot(
    conv_id: str | None = Query(None),
    service: ExportService = Depends(get_export_service),
) -> Response:
    """Export every table, or one conversation, as a downloadable snapshot."""
    try:
        result = await service.export_json(conv_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    filename = f"{conv_id}.json" if conv_id else "canopy-export.json"
    return JSONResponse(
        content=result,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
