"""Pydantic schemas for bulk student import results."""
from pydantic import BaseModel


class ImportRowError(BaseModel):
    row: int  # 1-based, header row is row 1
    field: str  # column name, or "_row" for failures not tied to one column
    value: str = ""
    message: str


class ImportResult(BaseModel):
    total_rows: int
    created: int = 0
    errors: list[ImportRowError] = []
    cancelled: bool = False
