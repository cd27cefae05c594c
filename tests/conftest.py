"""Shared fixtures for workflow tests.

Each test gets its own file-backed SQLite database and upload directory under
tmp_path, a scripted extraction provider, and one user per role.
"""

from collections.abc import Generator
from decimal import Decimal

import pytest

from services.extraction.schema import ExtractedInvoice
from services.shared.config import Settings
from services.storage.database import Database
from services.storage.service import LocalDocumentStorage
from services.workflow.engine import InvoiceWorkflowEngine
from services.workflow.schema import UserRole, UserView
from tests.fakes import PDF_BYTES, FakeExtractionProvider


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test database and upload directory."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'invoices.db'}",
        upload_dir=str(tmp_path / "uploads"),
        two_level_approval_threshold=Decimal("100000"),
        storage_backend="local",
    )


@pytest.fixture
def db(settings: Settings) -> Generator[Database, None, None]:
    database = Database.from_settings(settings)
    database.create_schema()
    yield database
    database.dispose()


@pytest.fixture
def extractor(settings: Settings) -> FakeExtractionProvider:
    return FakeExtractionProvider(settings)


@pytest.fixture
def storage(settings: Settings) -> LocalDocumentStorage:
    return LocalDocumentStorage(settings)


@pytest.fixture
def engine(
    db: Database,
    extractor: FakeExtractionProvider,
    storage: LocalDocumentStorage,
    settings: Settings,
) -> InvoiceWorkflowEngine:
    """Engine without a background queue: tests drive extraction explicitly."""
    return InvoiceWorkflowEngine(db=db, extractor=extractor, storage=storage, settings=settings)


@pytest.fixture
def employee(engine: InvoiceWorkflowEngine) -> UserView:
    return engine.register_user("emma", "emma@example.com", UserRole.EMPLOYEE)


@pytest.fixture
def other_employee(engine: InvoiceWorkflowEngine) -> UserView:
    return engine.register_user("oscar", "oscar@example.com", UserRole.EMPLOYEE)


@pytest.fixture
def accountant(engine: InvoiceWorkflowEngine) -> UserView:
    return engine.register_user("alice", "alice@example.com", UserRole.ACCOUNTS)


@pytest.fixture
def second_accountant(engine: InvoiceWorkflowEngine) -> UserView:
    return engine.register_user("adam", "adam@example.com", UserRole.ACCOUNTS)


@pytest.fixture
def senior(engine: InvoiceWorkflowEngine) -> UserView:
    return engine.register_user("sam", "sam@example.com", UserRole.SENIOR_ACCOUNTS)


@pytest.fixture
def submit_extracted(engine: InvoiceWorkflowEngine, extractor: FakeExtractionProvider):
    """Submit a PDF and run its extraction with the given extracted fields.

    Returns a callable: submit_extracted(user, filename="invoice.pdf", **fields)
    -> invoice id. fields are ExtractedInvoice field names (grand_total,
    vendor_name, ...).
    """

    def _submit(user: UserView, filename: str = "invoice.pdf", **fields) -> str:
        extractor.invoice = ExtractedInvoice(**fields)
        extractor.error = None
        invoice = engine.submit_document(user.id, "VENDOR_PAYMENT", PDF_BYTES, filename)
        engine.run_extraction(invoice.id)
        return invoice.id

    return _submit
