from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from bbsync_mappings import utc_now


class EntityCount(BaseModel):
    synced: int = 0
    skipped: int = 0
    failed: int = 0


class MigrationSummary(BaseModel):
    total_files: int = 0
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    total_size: int = 0
    duration: float = 0.0


class MigrationDetail(BaseModel):
    table: str
    field: str
    record_id: str
    old_url: str
    new_url: str | None = None
    error: str | None = None


class MigrationResult(BaseModel):
    summary: MigrationSummary = Field(default_factory=MigrationSummary)
    details: list[MigrationDetail] = Field(default_factory=list)


class MigrationStats(BaseModel):
    total_files: int = 0
    by_table: dict[str, int] = Field(default_factory=dict)
    by_field: dict[str, int] = Field(default_factory=dict)


class SyncResults(BaseModel):
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    session_id: str | None = None
    counts: dict[str, EntityCount] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    # Relational invoice sync only
    invoices_checked: int = 0
    invoices_needing_sync: int = 0
    files: MigrationResult | None = None

    def count(self, entity: str) -> EntityCount:
        return self.counts.setdefault(entity, EntityCount())

    def synced(self, entity: str) -> int:
        return self.counts[entity].synced if entity in self.counts else 0

    @property
    def success(self) -> bool:
        return not self.errors


class BrokenLink(BaseModel):
    table: str
    record_id: int
    bubble_id: str | None = None
    field: str
    referenced_bubble_id: str
    referenced_table: str
    error: str
    timestamp: datetime = Field(default_factory=utc_now)


class ValidationReport(BaseModel):
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    total_records_checked: int = 0
    total_relationships_checked: int = 0
    total_errors: int = 0
    errors_by_table: dict[str, int] = Field(default_factory=dict)
    errors: list[BrokenLink] = Field(default_factory=list)
    fixed_relationships: int = 0
    summary: str = ""
