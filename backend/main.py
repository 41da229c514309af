from fastapi import FastAPI, UploadFile, File, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from core.config import URL_FETCH_TIMEOUT, cors_origins
from core.models import UrlRequest
from core.storage import WorkspaceFileError, drop_session
from core.utils import df_to_records_safe
from server.api import router as workbench_router, workbench_for
import httpx
import pandas as pd
import io
import logging
import json
import time

logger = logging.getLogger("uvicorn.error")
app = FastAPI(title="DataCanvas", description="Shelf-driven charts and cross-filtering dashboards")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount the workbench API router
app.include_router(workbench_router)


def _log_response(ctx: str, payload) -> None:
    """Pretty-print JSON-able payloads; fall back to str()."""
    try:
        logger.info("%s response: %s", ctx, json.dumps(payload, indent=2, default=str))
    except (TypeError, ValueError):
        logger.info("%s response (non-serializable): %s", ctx, str(payload))


def read_csv_records(content: bytes) -> list[dict]:
    """Parse CSV bytes into records: numbers stay numbers, blanks become None."""
    try:
        df = pd.read_csv(io.BytesIO(content), skip_blank_lines=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        logger.exception("Failed to read CSV")
        raise HTTPException(status_code=400, detail=f"Failed to read CSV: {e}")
    return df_to_records_safe(df) if not df.empty else []


@app.post("/upload")
async def upload(request: Request, file: UploadFile = File(...)):
    """Load a CSV into the session, or restore a ``.datacanvas`` workspace."""
    wb = workbench_for(request)
    content = await file.read()
    filename = file.filename or "table.csv"
    t0 = time.perf_counter()

    if filename.lower().endswith(".datacanvas"):
        try:
            await wb.load_workspace(content)
        except WorkspaceFileError as e:
            raise HTTPException(status_code=400, detail=f"Failed to load workspace file: {e}")
        resp = {"ok": True, "workspace": filename, "worksheets": len(wb.worksheets)}
        _log_response("UPLOAD (workspace)", resp)
        return resp

    records = read_csv_records(content)
    wb.load_records(records, filename)
    resp = {
        "ok": True,
        "file": filename,
        "rows": len(records),
        "dimensions": [f.name for f in wb.dimensions],
        "measures": [f.name for f in wb.measures],
        "duration_ms": int((time.perf_counter() - t0) * 1000),
    }
    _log_response("UPLOAD", resp)
    return resp


@app.delete("/session")
async def end_session(request: Request):
    sid = request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header.")
    drop_session(sid)
    return {"ok": True}


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=URL_FETCH_TIMEOUT, follow_redirects=True)


@app.post("/api/data/url")
async def load_from_url(request: Request, body: UrlRequest):
    """Fetch a CSV over HTTP and load it like an uploaded file."""
    wb = workbench_for(request)
    url = body.url.strip()
    if not url:
        raise HTTPException(status_code=400, detail="Please enter a URL.")

    try:
        async with _http_client() as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise HTTPException(
            status_code=400, detail=f"Failed to fetch data from URL ({e.response.status_code})"
        ) from e
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.warning("Fetching %s failed: %s", url, e)
        raise HTTPException(status_code=400, detail=f"Failed to fetch data from URL: {e}") from e

    records = read_csv_records(response.content)
    filename = response.url.path.rstrip("/").rsplit("/", 1)[-1] or "remote.csv"
    wb.load_records(records, filename)
    resp = {
        "ok": True,
        "file": filename,
        "rows": len(records),
        "dimensions": [f.name for f in wb.dimensions],
        "measures": [f.name for f in wb.measures],
    }
    _log_response("LOAD URL", resp)
    return resp
