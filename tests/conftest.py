import pytest

from coursehub.infrastructure.persistence.sqlite import SQLitePersistence
from coursehub.services.capacity import CapacityCoordinator
from coursehub.services.notification_dispatcher import NotificationDispatcher
from coursehub.services.subscription_service import SubscriptionService
from tests.factories import FixedClock, RecordingNotifications


@pytest.fixture
def store(tmp_path):
    persistence = SQLitePersistence(tmp_path / "subscriptions.db")
    yield persistence
    persistence.close()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def capacity(store):
    return CapacityCoordinator(store, store)


@pytest.fixture
def dispatcher(store, notifications):
    return NotificationDispatcher(store, notifications)


@pytest.fixture
def service(store, capacity, dispatcher, clock):
    return SubscriptionService(store, capacity, dispatcher, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("student@example.com", "Student")


@pytest.fixture
def other_user(store):
    return store.create_user("other@example.com", "Other")


@pytest.fixture
def course(store):
    return store.create_course("Python Basics", max_students=2, lessons_count=10)
