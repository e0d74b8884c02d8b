"""
Application services used by the HTTP layer.

Modules:
    survey_service: Summary survey reads and direct edits, with status
        mirroring onto master records and a non-blocking push to the sheet

Usage:
    from services.survey_service import SurveyService

Example:
    service = SurveyService(db, enum_cache, sink=sheets_source)
    summary = await service.update_summary(
        "1002237835",
        SurveyUpdateRequest(installation_status="Go Live")
    )
"""

__all__ = ["SurveyService"]
