"""
FastAPI app: unused security groups from Postgres.
Data is populated by running: python scripts/populate_unused_sgs_db.py
"""

from io import BytesIO

from fastapi import FastAPI
from fastapi.responses import Response
from openpyxl import Workbook

from sgcleanup.db import fetch_all, get_connection
from sgcleanup.regions import REGIONS

app = FastAPI(title="SG Cleanup", version="0.1.0")

EXPORT_HEADERS = ["Region", "Group ID", "Name", "Description", "VPC", "Referenced By", "Console URL"]


def get_unused_sgs_from_db() -> list[dict]:
    with get_connection() as conn:
        return fetch_all(conn)


def build_workbook(rows: list[dict]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Unused SGs"
    ws.append(EXPORT_HEADERS)
    for r in rows:
        ws.append([
            r.get("region", ""),
            r.get("group_id", ""),
            r.get("group_name", ""),
            r.get("description", ""),
            r.get("vpc_id") or "",
            r.get("referenced_by") or "",
            r.get("console_url", ""),
        ])
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


@app.get("/")
def root():
    return {"service": "sg-cleanup", "unused_sgs": "/api/unused-sgs", "export": "/api/unused-sgs/export"}


@app.get("/api/regions")
def list_regions():
    return {"regions": REGIONS}


@app.get("/api/unused-sgs")
def api_unused_sgs():
    """JSON list of unused SGs from the database."""
    return get_unused_sgs_from_db()


@app.get("/api/unused-sgs/export")
def api_unused_sgs_export():
    """Download the table as an Excel file."""
    return Response(
        content=build_workbook(get_unused_sgs_from_db()),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": "attachment; filename=unused-security-groups.xlsx"},
    )
