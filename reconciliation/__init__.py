"""
Spreadsheet <-> database reconciliation.

This package contains everything that turns sheet rows into persisted
master and summary records:

Modules:
    base: Row source / row sink abstractions
    normalizer: Raw cells -> MasterRow / SummaryRow
    enum_cache: Race-tolerant find-or-create over the enum catalog
    identity: Summary row -> master case id resolution
    engine: Mode-parameterised reconciliation (full, incremental, batched)
    executor: Chunked transactions with savepoints and a deadline
    runner: Entry point with sync log and single-flight guard
    validation: Pre-flight row checks and orphan detection
    scheduler: APScheduler integration for periodic syncs

Subpackages:
    sources: Google Sheets (httpx), CSV exports (pandas), in-memory rows

Architecture:
    A run goes through fixed phases:

    1. Read - fetch both sheets from the row source
    2. Normalize - typed rows, unusable rows counted as skipped
    3. Resolve enums - every catalog id resolved before transactions open
    4. Pre-delete - summaries whose case left the sheet free their NO
    5. Upsert - masters first, then summaries, in chunk transactions
    6. Full mode only - delete records absent from the snapshot

Usage:
    from reconciliation.runner import SyncRunner
    from reconciliation.sources.sheets_source import GoogleSheetsSource

Example:
    runner = SyncRunner(async_session_maker, source=GoogleSheetsSource())
    result = await runner.run(mode=SyncMode.BATCHED, batch_number=1)

    if not result.completed:
        await runner.run(mode=SyncMode.BATCHED, batch_number=result.next_batch_number)

Error Handling:
    Row-level failures are counted, never raised. Only a failing row
    source or snapshot load propagates, and is recorded as a FAILED sync
    log entry.
"""
