"""Pydantic schemas for the import API."""

from pydantic import BaseModel


class ImportedTable(BaseModel):
    table: str
    rows: int


class ImportResponse(BaseModel):
    tables: list[ImportedTable]
    skipped_tables: list[str]
    conversation_ids: list[str]
