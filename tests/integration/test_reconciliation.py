"""
Integration tests for the reconciliation engine: sheet rows -> master/summary tables
"""

import random
import pytest
from datetime import date
from decimal import Decimal
from sqlalchemy import select, func
from models.base import EnumCategory, SyncMode, SyncStatus
from models.enum_catalog import EnumCatalogEntry
from models.master_record import MasterRecord
from models.summary_record import SummaryRecord
from models.sync_log import SyncLog


async def fetch_all(session_maker, model):
    async with session_maker() as session:
        result = await session.execute(select(model))
        return list(result.scalars().all())


async def summaries_by_case(session_maker):
    return {s.case_id: s for s in await fetch_all(session_maker, SummaryRecord)}


async def masters_by_case(session_maker):
    return {m.case_id: m for m in await fetch_all(session_maker, MasterRecord)}


@pytest.mark.asyncio
async def test_initial_sync_creates_records(runner, session_maker, sheet_snapshot):
    """
    Integration test: Read -> Normalize -> Reconcile -> Verify
    """
    result = await runner.run(mode=SyncMode.INCREMENTAL, **sheet_snapshot)

    assert result.completed is True
    assert result.errors == 0
    assert result.created == 4  # 2 masters + 2 summaries
    assert result.total_records == 4
    assert result.processed_records == 4

    masters = await masters_by_case(session_maker)
    summaries = await summaries_by_case(session_maker)

    assert set(masters) == {"1002237835", "1002240001"}
    assert set(summaries) == {"1002237835", "1002240001"}

    summary = summaries["1002240001"]
    assert summary.sequence_no == "0002"
    assert summary.contract_value == Decimal("8000000")
    assert summary.cost_ratio == Decimal("0.45")
    assert summary.sync_status == SyncStatus.SYNCED
    assert summary.last_sync_at is not None
    assert masters["1002240001"].budget_amount == Decimal("7250000")


@pytest.mark.asyncio
async def test_rerun_is_idempotent(runner, session_maker, sheet_snapshot):
    """A second run over an unchanged sheet changes nothing"""
    await runner.run(**sheet_snapshot)
    before = {s.case_id: s.updated_at for s in await fetch_all(session_maker, SummaryRecord)}

    result = await runner.run(**sheet_snapshot)

    assert (result.created, result.updated, result.deleted, result.errors) == (0, 0, 0, 0)
    assert result.skipped == 4
    after = {s.case_id: s.updated_at for s in await fetch_all(session_maker, SummaryRecord)}
    assert after == before


@pytest.mark.asyncio
async def test_rerun_with_values_finer_than_column_scale(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    """Cells with more decimals than the column stores are unchanged on the next run"""
    summary = summary_row(
        "1", "1002237835", contract_value="5,000,000.555", cost_ratio="33.333%",
        budget="7,250,000.125"
    )
    summary[21] = "1.234"
    rows = {
        "master_rows": [detail_header, detail_row("1002237835", budget="4,999,999.995")],
        "summary_rows": [summary_header, summary],
    }

    first = await runner.run(**rows)
    second = await runner.run(**rows)
    third = await runner.run(**rows)

    assert first.created == 2
    assert (second.updated, second.skipped) == (0, 2)
    assert (third.updated, third.skipped) == (0, 2)

    stored = (await summaries_by_case(session_maker))["1002237835"]
    assert stored.contract_value == Decimal("5000000.56")
    assert stored.cost_ratio == Decimal("0.3333")
    assert stored.distance_to_odp == Decimal("1.23")
    assert (await masters_by_case(session_maker))["1002237835"].budget_amount == Decimal("5000000.00")


@pytest.mark.asyncio
async def test_alternate_code_links_to_existing_master(runner, session_maker, sheet_snapshot):
    """Summary identity SC-9981 resolves to case 1002237835; no extra master"""
    await runner.run(**sheet_snapshot)

    masters = await masters_by_case(session_maker)
    summaries = await summaries_by_case(session_maker)

    assert "SC-9981" not in masters
    assert summaries["1002237835"].sequence_no == "0001"
    assert masters["1002237835"].alternate_service_code == "SC-9981"


@pytest.mark.asyncio
async def test_numeric_identity_creates_its_own_master(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    """A numeric identity sharing a customer name with another case is not linked by name"""
    result = await runner.run(
        master_rows=[detail_header, detail_row("1002237835", customer_name="PT Sinar Jaya")],
        summary_rows=[
            summary_header,
            summary_row("1", "1002249961", customer_name="PT Sinar Jaya", installation_status="Go Live"),
        ]
    )

    assert result.errors == 0
    masters = await masters_by_case(session_maker)
    summaries = await summaries_by_case(session_maker)

    assert set(masters) == {"1002237835", "1002249961"}
    assert set(summaries) == {"1002249961"}

    # Master created from the summary row carries the fields the summary knows
    created = masters["1002249961"]
    assert created.customer_name == "PT Sinar Jaya"
    assert created.service_area == "SEMARANG"
    assert created.installation_status is not None


@pytest.mark.asyncio
async def test_name_match_for_non_numeric_identity(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    master_rows = [detail_header, detail_row("1002240001", customer_name="CV Maju Bersama")]
    summary_rows = [summary_header, summary_row("1", "SC-7777", customer_name="cv maju bersama")]

    await runner.run(master_rows=master_rows, summary_rows=summary_rows)

    assert set(await masters_by_case(session_maker)) == {"1002240001"}
    assert set(await summaries_by_case(session_maker)) == {"1002240001"}


@pytest.mark.asyncio
async def test_name_matching_disabled(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    master_rows = [detail_header, detail_row("1002240001", customer_name="CV Maju Bersama")]
    summary_rows = [summary_header, summary_row("1", "SC-7777", customer_name="CV Maju Bersama")]

    await runner.run(master_rows=master_rows, summary_rows=summary_rows, enable_name_matching=False)

    assert set(await masters_by_case(session_maker)) == {"1002240001", "SC-7777"}


@pytest.mark.asyncio
async def test_numeric_equality_is_not_a_change(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    """5000000 and 5000000.00 are the same amount"""
    master_rows = [detail_header, detail_row("1002237835")]
    await runner.run(master_rows=master_rows, summary_rows=[
        summary_header, summary_row("1", "1002237835", contract_value="5,000,000.00"),
    ])

    unchanged = await runner.run(master_rows=master_rows, summary_rows=[
        summary_header, summary_row("1", "1002237835", contract_value="5000000"),
    ])
    assert unchanged.updated == 0

    changed = await runner.run(master_rows=master_rows, summary_rows=[
        summary_header, summary_row("1", "1002237835", contract_value="5,500,000"),
    ])
    assert changed.updated == 1
    assert changed.skipped == 1  # the master

    summaries = await summaries_by_case(session_maker)
    assert summaries["1002237835"].contract_value == Decimal("5500000")


@pytest.mark.asyncio
async def test_update_keeps_sequence_no(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    """An existing summary keeps the sequence no it was created with"""
    master_rows = [detail_header, detail_row("1002237835")]
    await runner.run(master_rows=master_rows, summary_rows=[
        summary_header, summary_row("1", "1002237835"),
    ])

    await runner.run(master_rows=master_rows, summary_rows=[
        summary_header, summary_row("5", "1002237835", job_status="Go Live"),
    ])

    summary = (await summaries_by_case(session_maker))["1002237835"]
    assert summary.sequence_no == "0001"


@pytest.mark.asyncio
async def test_pre_delete_frees_sequence_no(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    """
    Sequence 0001 moves to a different case: the old summary is deleted
    before the new one is created, so no unique-constraint failure occurs.
    """
    master_rows = [detail_header, detail_row("1002237835"), detail_row("1002240001")]
    await runner.run(mode=SyncMode.FULL, master_rows=master_rows, summary_rows=[
        summary_header, summary_row("1", "1002237835"),
    ])

    result = await runner.run(mode=SyncMode.FULL, master_rows=master_rows, summary_rows=[
        summary_header, summary_row("1", "1002240001"),
    ])

    assert result.errors == 0
    assert result.deleted == 1
    assert result.created == 1
    summaries = await summaries_by_case(session_maker)
    assert set(summaries) == {"1002240001"}
    assert summaries["1002240001"].sequence_no == "0001"


@pytest.mark.asyncio
async def test_incremental_never_deletes_masters(
    runner, session_maker, sheet_snapshot, detail_header, summary_header
):
    await runner.run(**sheet_snapshot)

    result = await runner.run(
        master_rows=sheet_snapshot["master_rows"][:2],
        summary_rows=sheet_snapshot["summary_rows"][:2],
    )

    # Orphaned summary removed, master kept
    assert result.deleted == 1
    assert set(await masters_by_case(session_maker)) == {"1002237835", "1002240001"}
    assert set(await summaries_by_case(session_maker)) == {"1002237835"}


@pytest.mark.asyncio
async def test_full_mode_deletes_absent_records(runner, session_maker, sheet_snapshot):
    await runner.run(**sheet_snapshot)

    result = await runner.run(
        mode=SyncMode.FULL,
        master_rows=sheet_snapshot["master_rows"][:2],
        summary_rows=sheet_snapshot["summary_rows"][:2],
    )

    assert result.deleted == 2  # summary pre-delete + absent master
    assert set(await masters_by_case(session_maker)) == {"1002237835"}
    assert set(await summaries_by_case(session_maker)) == {"1002237835"}


@pytest.mark.asyncio
async def test_full_mode_with_empty_snapshot_deletes_nothing(
    runner, session_maker, sheet_snapshot, detail_header, summary_header
):
    await runner.run(**sheet_snapshot)

    result = await runner.run(mode=SyncMode.FULL, master_rows=[detail_header], summary_rows=[summary_header])

    assert result.deleted == 0
    assert len(await masters_by_case(session_maker)) == 2
    assert len(await summaries_by_case(session_maker)) == 2


@pytest.mark.asyncio
async def test_delete_orphans_can_be_disabled(runner, session_maker, sheet_snapshot):
    await runner.run(**sheet_snapshot)

    result = await runner.run(
        mode=SyncMode.FULL,
        master_rows=sheet_snapshot["master_rows"][:2],
        summary_rows=sheet_snapshot["summary_rows"][:2],
        delete_orphans=False,
    )

    assert result.deleted == 0
    assert len(await summaries_by_case(session_maker)) == 2


@pytest.mark.asyncio
async def test_unknown_enum_values_are_created(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    await runner.run(
        master_rows=[detail_header, detail_row("1002237835")],
        summary_rows=[summary_header, summary_row("1", "1002237835", job_status="Waiting Permit")],
    )

    entries = await fetch_all(session_maker, EnumCatalogEntry)
    by_key = {(e.category, e.value): e for e in entries}
    entry = by_key[(EnumCategory.JOB_STATUS, "WAITING_PERMIT")]
    assert entry.display_label == "Waiting Permit"
    assert entry.active is True

    summary = (await summaries_by_case(session_maker))["1002237835"]
    assert summary.job_status == entry.id

    # Each distinct value is stored once per category
    assert len(entries) == len(by_key)


@pytest.mark.asyncio
async def test_rows_without_identity_are_skipped(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    result = await runner.run(
        master_rows=[detail_header, detail_row("1002237835"), detail_row("-")],
        summary_rows=[summary_header, summary_row("1", "1002237835"), summary_row("2", "")],
    )

    assert result.skipped == 2
    assert result.created == 2


@pytest.mark.asyncio
async def test_missing_input_dates_filled_by_customer_name(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    """Masters created from summary rows take the date of the customer's dated detail row"""
    rows = {
        "master_rows": [
            detail_header,
            detail_row("1002237835", customer_name="PT Sinar Jaya", input_date="1/15/2024"),
            detail_row("1002260001", customer_name="Toko Abadi", input_date=""),
        ],
        "summary_rows": [
            summary_header,
            summary_row("1", "1002249961", customer_name="pt sinar jaya "),
            summary_row("2", "1002270001", customer_name="Toko Abadi"),
            summary_row("3", "1002280001", customer_name="UD Baru"),
        ],
    }

    first = await runner.run(**rows)

    assert first.errors == 0
    assert first.dates_fixed == 1
    masters = await masters_by_case(session_maker)
    assert masters["1002249961"].input_date == date(2024, 1, 15)
    assert masters["1002270001"].input_date is None
    assert masters["1002280001"].input_date is None
    # A detail row is authoritative for its own case
    assert masters["1002260001"].input_date is None

    second = await runner.run(**rows)

    assert second.dates_fixed == 0
    assert second.updated == 0


@pytest.mark.asyncio
async def test_name_match_stable_across_batches(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    """A master created from a summary row in one batch does not make the name ambiguous later"""
    master_rows = [detail_header, detail_row("1002240001", customer_name="CV Maju Bersama")]
    summary_rows = [
        summary_header,
        summary_row("1", "1002290001", customer_name="CV Maju Bersama"),
        summary_row("2", "SC-7777", customer_name="CV Maju Bersama"),
    ]

    results = [await runner.run(
        mode=SyncMode.BATCHED, batch_size=1, deadline_seconds=0,
        master_rows=master_rows, summary_rows=summary_rows
    )]
    while not results[-1].completed:
        results.append(await runner.run(
            mode=SyncMode.BATCHED, batch_size=1, deadline_seconds=0,
            batch_number=results[-1].next_batch_number,
            master_rows=master_rows, summary_rows=summary_rows
        ))

    assert len(results) == 3
    assert set(await masters_by_case(session_maker)) == {"1002240001", "1002290001"}
    summaries = await summaries_by_case(session_maker)
    assert summaries["1002240001"].sequence_no == "0002"


@pytest.mark.asyncio
async def test_dates_fixed_reported_in_sync_log(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    await runner.run(
        master_rows=[detail_header, detail_row("1002237835", customer_name="CV Maju Bersama")],
        summary_rows=[summary_header, summary_row("1", "1002249961", customer_name="CV Maju Bersama")],
    )

    [entry] = await fetch_all(session_maker, SyncLog)
    assert entry.message.endswith(", 1 dates fixed")


@pytest.mark.asyncio
async def test_truncated_run_does_not_fill_dates(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    result = await runner.run(
        mode=SyncMode.BATCHED, batch_size=1, deadline_seconds=0,
        master_rows=[detail_header, detail_row("1002237835")],
        summary_rows=[summary_header, summary_row("1", "1002249961")],
    )

    assert result.completed is False
    assert result.dates_fixed == 0


@pytest.mark.asyncio
async def test_deadline_truncates_and_batches_continue(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    """
    A run stopped by its deadline reports the remaining work; invoking the
    next batch numbers finishes the sync.
    """
    master_rows = [detail_header] + [detail_row(f"10022400{i:02d}") for i in range(5)]
    summary_rows = [summary_header] + [
        summary_row(str(i + 1), f"10022400{i:02d}") for i in range(5)
    ]

    first = await runner.run(
        mode=SyncMode.BATCHED, batch_size=3, master_rows=master_rows,
        summary_rows=summary_rows, deadline_seconds=0
    )

    assert first.completed is False
    assert first.processed_records == 3
    assert first.total_records == 10
    assert first.remaining_records == 7
    assert first.next_batch_number == 2

    results = [first]
    while not results[-1].completed:
        results.append(await runner.run(
            mode=SyncMode.BATCHED, batch_size=3, batch_number=results[-1].next_batch_number,
            master_rows=master_rows, summary_rows=summary_rows, deadline_seconds=0
        ))

    assert len(results) == 4
    assert results[-1].processed_records == 10
    assert sum(r.created for r in results) == 10
    assert sum(r.errors for r in results) == 0
    assert len(await summaries_by_case(session_maker)) == 5


@pytest.mark.asyncio
async def test_batched_mode_runs_max_batches(
    runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    master_rows = [detail_header] + [detail_row(f"10022400{i:02d}") for i in range(4)]

    result = await runner.run(
        mode=SyncMode.BATCHED, batch_size=1, max_batches=2,
        master_rows=master_rows, summary_rows=[summary_header]
    )

    assert result.batches_processed == 2
    assert result.next_batch_number == 3
    assert len(await masters_by_case(session_maker)) == 2


@pytest.mark.parametrize("seed", [7, 21, 1337])
@pytest.mark.asyncio
async def test_no_orphaned_summaries_for_random_snapshots(
    seed, runner, session_maker, detail_header, summary_header, detail_row, summary_row
):
    """Every stored summary has a master, whatever mix of identities the sheet holds"""
    rng = random.Random(seed)
    case_ids = [f"10022{rng.randint(10000, 99999)}" for _ in range(12)]
    names = ["PT Sinar Jaya", "CV Maju Bersama", "Toko Abadi", "UD Sentosa"]

    def snapshot():
        details = [detail_header]
        alternates = {}
        for case_id in rng.sample(case_ids, rng.randint(0, len(case_ids))):
            alternate = f"SC-{rng.randint(100, 999)}" if rng.random() < 0.3 else None
            if alternate:
                alternates[alternate] = case_id
            details.append(detail_row(case_id, customer_name=rng.choice(names), alternate_code=alternate))

        identities = case_ids + list(alternates) + ["SC-X1", "SC-X2"]
        summaries = [summary_header]
        for no, identity in enumerate(rng.sample(identities, rng.randint(0, len(identities))), start=1):
            summaries.append(summary_row(str(no), identity, customer_name=rng.choice(names)))
        return details, summaries

    for mode in (SyncMode.INCREMENTAL, SyncMode.FULL, SyncMode.INCREMENTAL):
        details, summaries = snapshot()
        await runner.run(mode=mode, master_rows=details, summary_rows=summaries)

        async with session_maker() as session:
            orphans = await session.execute(
                select(func.count()).select_from(SummaryRecord)
                .outerjoin(MasterRecord, SummaryRecord.case_id == MasterRecord.case_id)
                .where(MasterRecord.id.is_(None))
            )
            assert orphans.scalar() == 0
