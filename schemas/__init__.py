"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for typed sheet rows and for
request/response validation of the HTTP API:

Schemas:
    rows: MasterRow / SummaryRow produced by the row normalizer
    api: API endpoint request/response schemas

Features:
    - Automatic data validation
    - Type coercion and conversion (Decimal money fields, dates)
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.rows import MasterRow, SummaryRow
    from schemas.api import SyncResponse, SurveyQueryParams

Example:
    row = MasterRow(row_number=4, case_id="1002237835")
    assert row.budget_amount is None
"""

__all__ = [
    "MasterRow",
    "SummaryRow",
    "RawRow",
    "SyncRequest",
    "SyncResponse",
    "SurveyResponse",
    "SurveyQueryParams",
    "HealthCheckResponse",
    "StatsResponse",
]
