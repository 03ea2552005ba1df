import asyncio
import csv
import io
import logging
import uuid

from openpyxl import load_workbook

from config.env import FILE_INGEST_CONCURRENCY
from utils.clock import utc_now
from utils.errors import CodReconError, ValidationError
from utils.ingest import normalize_file_row, resolve_column_mapping
from utils.reconciliation import reconcile_report

logger = logging.getLogger(__name__)

XLSX_SIGNATURE = b"PK\x03\x04"


def parse_rows(content: bytes, filename: str | None = None) -> list:
    """CSV or XLSX bytes -> list of header-keyed dicts."""
    if not content:
        raise ValidationError("Uploaded file is empty", code="EMPTY_FILE")

    name = (filename or "").lower()
    if name.endswith(".xlsx") or content.startswith(XLSX_SIGNATURE):
        return _parse_xlsx(content)
    return _parse_csv(content)


def _parse_csv(content: bytes) -> list:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = content.decode("latin-1")

    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValidationError("CSV file has no header row", code="MISSING_HEADER")
    return [
        {(k or "").strip(): (v.strip() if isinstance(v, str) else v) for k, v in row.items()}
        for row in reader
    ]


def _parse_xlsx(content: bytes) -> list:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise ValidationError(f"Unreadable spreadsheet: {e}", code="INVALID_FILE")

    try:
        sheet = workbook.active
        rows = sheet.iter_rows(values_only=True)
        header = next(rows, None)
        if not header:
            raise ValidationError("Spreadsheet has no header row", code="MISSING_HEADER")
        keys = [str(h).strip() if h is not None else "" for h in header]

        parsed = []
        for values in rows:
            if values is None or all(v in (None, "") for v in values):
                continue
            parsed.append({k: v for k, v in zip(keys, values) if k})
        return parsed
    finally:
        workbook.close()


async def ingest_collection_file(
    db,
    *,
    content: bytes,
    filename: str | None = None,
    carrier: str | None = None,
    mapping_override: dict | None = None,
    uploaded_by: str = "system",
    now=None,
) -> dict:
    """
    Reconcile every row of an MIS file, FILE_INGEST_CONCURRENCY rows at a
    time. A bad row is recorded against the run and never aborts the file.
    """
    now = now or utc_now()
    rows = parse_rows(content, filename)
    mapping = resolve_column_mapping(carrier, mapping_override)
    semaphore = asyncio.Semaphore(FILE_INGEST_CONCURRENCY)

    async def process(index: int, row: dict) -> dict:
        async with semaphore:
            line = index + 2  # header is line 1
            try:
                report = normalize_file_row(row, mapping, carrier=carrier)
                outcome = await reconcile_report(db, report, now=now)
                return {"row": line, "ref": report.collectible_ref, "ok": True, **outcome}
            except CodReconError as e:
                return {"row": line, "ok": False, "error": e.code, "detail": e.detail}
            except Exception as e:
                logger.exception("FILE_ROW_ERROR file=%s row=%s", filename, line)
                return {"row": line, "ok": False, "error": "INTERNAL_ERROR", "detail": str(e)}

    results = await asyncio.gather(*(process(i, row) for i, row in enumerate(rows)))

    summary = {"total": len(results), "failed": 0, "duplicate": 0}
    for result in results:
        if not result["ok"]:
            summary["failed"] += 1
        elif result.get("duplicate"):
            summary["duplicate"] += 1
        else:
            key = result.get("outcome", "unknown")
            summary[key] = summary.get(key, 0) + 1

    run_id = f"RUN-{uuid.uuid4().hex[:16].upper()}"
    await db.ingest_runs.insert_one({
        "_id": run_id,
        "filename": filename,
        "carrier": carrier,
        "uploaded_by": uploaded_by,
        "summary": summary,
        "rows": results,
        "created_at": now,
    })

    logger.info(
        "FILE_INGESTED run=%s file=%s total=%s failed=%s",
        run_id,
        filename,
        summary["total"],
        summary["failed"],
    )
    return {"run_id": run_id, "summary": summary, "rows": results}
