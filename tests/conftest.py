import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from booking_app import models  # noqa: F401
from booking_app.config import SecuritySettings
from booking_app.database import Base
from booking_app.domain.bookings.repository import BookingStateRepository
from booking_app.domain.bookings.security import BookingSecurity
from booking_app.domain.bookings.service import BookingStateService
from booking_app.domain.bookings.state_machine import BookingStateMachine

ENCRYPTION_KEY = "test-encryption-key"
SIGNING_KEY = "test-signing-key"
APP_URL = "https://app.test"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def security():
    return BookingSecurity(SecuritySettings(encryption_key=ENCRYPTION_KEY, signing_key=SIGNING_KEY))


@pytest.fixture
def machine(security):
    return BookingStateMachine(token_issuer=security.generate_state_token)


@pytest.fixture
def repo(db, security):
    return BookingStateRepository(db, security)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def service(db, security, sleeps):
    return BookingStateService(
        db,
        security,
        app_url=APP_URL,
        retry_options={"max_retries": 2, "initial_delay": 0.01, "max_delay": 0.05},
        sleep=sleeps.append,
    )


@pytest.fixture
def booking_in(service):
    """Create a booking and drive it through ``events``; returns the booking ID"""

    def _make(*events, **initial):
        context = service.create_booking(initial or {"builder_id": "builder-1"})
        for event in events:
            result = service.transition_booking(context.booking_id, event)
            assert result.success, result.error
        return context.booking_id

    return _make


@pytest.fixture
def client(service):
    from booking_app.domain.bookings.router import get_booking_service
    from booking_app.main import app

    app.dependency_overrides[get_booking_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
