"""
Pytest configuration and fixtures
"""

import os
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession
from typing import AsyncGenerator
from core.database import build_engine, build_session_maker
from models.base import Base
from reconciliation.runner import SyncRunner

# Set TEST_DATABASE_URL to run against PostgreSQL instead of a temp SQLite file
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

DETAIL_HEADER = [
    "NO", "UMUR", "BLN", "TGL INPUT", "ID KENDALA", "JENIS ORDER", "DATEL", "STO",
    "NAMA PELANGGAN", "LATITUDE", "LONGITUDE", "KENDALA", "RENCANA TEMATIK", "RAB",
    "NILAI DESAIN", "STATUS USULAN", "STATUS DESAIN", "NO USULAN", "STATUS INSTALASI",
    "KETERANGAN", "NEW SC",
]

SUMMARY_HEADER = [
    "NO", "STATUS JT", "% BIAYA", "NOMOR NCX/STARCLICK", "DATEL", "STO", "NAMA PELANGGAN",
    "LATITUDE", "LONGITUDE", "ALAMAT", "LAYANAN", "NILAI KONTRAK", "ID DESAIN",
    "RENCANA TEMATIK", "RAB", "RAB SURVEY", "NO NDE", "STATUS USULAN", "STATUS INSTALASI",
    "PROGRES", "NAMA ODP", "JARAK ODP", "KETERANGAN",
]


def build_detail_row(
    case_id,
    customer_name="PT Sinar Jaya",
    alternate_code=None,
    budget="5,000,000",
    installation_status="Survey",
    proposal_status="Review",
    thematic_plan="PT2",
    input_date="1/15/2024",
    service_area="SEMARANG",
    exchange_code="SMG",
):
    return [
        "1", "10", "Jan", input_date, case_id, "New", service_area, exchange_code,
        customer_name, "-6.99", "110.42", "ODP Full", thematic_plan, budget,
        "4,500,000", proposal_status, "Done", "USL-1", installation_status, "-",
        alternate_code,
    ]


def build_summary_row(
    no,
    identity,
    customer_name="PT Sinar Jaya",
    contract_value="5,000,000",
    job_status="Review",
    cost_ratio="45%",
    installation_status="Survey",
    thematic_plan="PT2",
    proposal_status="Review",
    survey_budget=None,
    budget="5,000,000",
    service_area="SEMARANG",
):
    return [
        no, job_status, cost_ratio, identity, service_area, "SMG", customer_name,
        "-6.99", "110.42", "Jl. Pemuda 1", "Internet", contract_value, "12",
        thematic_plan, budget, survey_budget, "NDE-1", proposal_status,
        installation_status, "50%", "ODP-SMG-01", "120", None,
    ]


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create test database engine"""
    engine = build_engine(TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(test_engine):
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def runner(session_maker) -> SyncRunner:
    """Runner without a row source; tests hand rows in directly"""
    return SyncRunner(session_maker)


@pytest.fixture
def detail_row():
    return build_detail_row


@pytest.fixture
def summary_row():
    return build_summary_row


@pytest.fixture
def detail_header():
    return list(DETAIL_HEADER)


@pytest.fixture
def summary_header():
    return list(SUMMARY_HEADER)


@pytest.fixture
def sheet_snapshot(detail_header, summary_header):
    """Two detail rows and two summary rows, one linked by alternate code"""
    return {
        "master_rows": [
            detail_header,
            build_detail_row("1002237835", customer_name="PT Sinar Jaya", alternate_code="SC-9981"),
            build_detail_row("1002240001", customer_name="CV Maju Bersama", budget="7,250,000"),
        ],
        "summary_rows": [
            summary_header,
            build_summary_row("1", "SC-9981", customer_name="PT Sinar Jaya"),
            build_summary_row("2", "1002240001", customer_name="CV Maju Bersama",
                              contract_value="8,000,000", job_status="Go Live"),
        ],
    }
