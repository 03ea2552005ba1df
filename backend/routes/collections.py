import json

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from database import get_db
from utils.carriers import poll_collection
from utils.file_ingest import ingest_collection_file
from utils.guards import require_admin
from utils.serializers import serialize_doc

router = APIRouter(prefix="/api/collections", tags=["Collections"])

ALLOWED_EXTENSIONS = (".csv", ".xlsx")


# =========================
# UPLOAD CARRIER MIS FILE
# =========================
@router.post("/files")
async def upload_collection_file(
    file: UploadFile = File(...),
    carrier: str = Form(default="generic"),
    mapping: str | None = Form(default=None),
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    # validate file type
    if not file.filename or not file.filename.lower().endswith(ALLOWED_EXTENSIONS):
        raise HTTPException(
            status_code=400,
            detail="Only CSV or XLSX files are allowed",
        )

    mapping_override = None
    if mapping:
        try:
            mapping_override = json.loads(mapping)
        except ValueError:
            raise HTTPException(400, "mapping must be a JSON object")
        if not isinstance(mapping_override, dict):
            raise HTTPException(400, "mapping must be a JSON object")

    content = await file.read()
    return await ingest_collection_file(
        db,
        content=content,
        filename=file.filename,
        carrier=carrier,
        mapping_override=mapping_override,
        uploaded_by=operator,
    )


@router.get("/files/{run_id}")
async def ingest_run_detail(
    run_id: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    run = await db.ingest_runs.find_one({"_id": run_id})
    if not run:
        raise HTTPException(404, "Ingest run not found")
    return serialize_doc(run)


# =========================
# ON-DEMAND POLL
# =========================
@router.post("/poll/{carrier}/{shipment_ref}")
async def poll_shipment(
    carrier: str,
    shipment_ref: str,
    operator=Depends(require_admin),
    db=Depends(get_db),
):
    return await poll_collection(db, carrier=carrier, shipment_ref=shipment_ref)
