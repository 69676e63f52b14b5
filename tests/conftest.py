"""
Shared fixtures: temporary SQLite databases, a controllable clock and seeded
reference data (stores, users, templates, conditions).
"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from nocheck.core.dao import (
    SqliteActionPlanStore,
    SqliteConfigStore,
    SqliteCrossValidationStore,
    SqliteDirectoryStore,
    SqliteNotificationStore,
    SqliteSubmissionStore,
)
from nocheck.core.db import init_db
from nocheck.core.notifications import InMemoryNotificationGateway
from nocheck.core.schema import FieldCondition, Store, Template, TemplateField, UserProfile

RECEIVING_TEMPLATE = 10
OPENING_TEMPLATE = 20

FIELD_DOCUMENT = 101
FIELD_TOTAL = 102
FIELD_TEMPERATURE = 201
FIELD_CLEAN = 202

STORE_ID = 1


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def db_path():
    """Temporary authoritative database, removed after the test."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    init_db(path)
    yield path
    os.unlink(path)


@pytest.fixture
def offline_db_path():
    fd, path = tempfile.mkstemp(suffix='_offline.db')
    os.close(fd)
    yield path
    os.unlink(path)


@pytest.fixture
def config_store(db_path):
    store = SqliteConfigStore(db_path)
    store.add_template(
        Template(id=RECEIVING_TEMPLATE, name="Recebimento de mercadoria", category="recebimento"),
        [
            TemplateField(id=FIELD_DOCUMENT, template_id=RECEIVING_TEMPLATE, name="Numero da Nota", field_type="text"),
            TemplateField(id=FIELD_TOTAL, template_id=RECEIVING_TEMPLATE, name="Valor Total", field_type="number"),
        ],
    )
    store.add_template(
        Template(id=OPENING_TEMPLATE, name="Abertura de loja", category="abertura"),
        [
            TemplateField(id=FIELD_TEMPERATURE, template_id=OPENING_TEMPLATE, name="Temperatura da camara",
                          field_type="number"),
            TemplateField(id=FIELD_CLEAN, template_id=OPENING_TEMPLATE, name="Piso limpo", field_type="yes_no"),
        ],
    )
    store.add_condition(FieldCondition(
        id=1,
        field_id=FIELD_TEMPERATURE,
        condition_type="greater_than",
        condition_value={"max": 5},
        severity="media",
        deadline_days=3,
        description_template="Temperatura {value} fora do limite em {store_name}",
    ))
    store.add_condition(FieldCondition(
        id=2,
        field_id=FIELD_CLEAN,
        condition_type="equals",
        condition_value={"value": "Nao"},
        severity="baixa",
        deadline_days=1,
        default_assignee_id="manager-1",
    ))
    return store


@pytest.fixture
def directory(db_path):
    store = SqliteDirectoryStore(db_path)
    store.add_store(Store(id=STORE_ID, name="Loja Centro"))
    store.add_store(Store(id=2, name="Loja Norte"))
    for user in (
        UserProfile(id="u-est", email="estoque@example.com", full_name="Ana Estoque", function_name="Estoquista"),
        UserProfile(id="u-apr", email="aprendiz@example.com", full_name="Bruno Aprendiz", function_name="Jovem Aprendiz"),
        UserProfile(id="u-gerente", email="gerente@example.com", full_name="Carla", function_name="Gerente"),
        UserProfile(id="manager-1", email="manager@example.com", full_name="Davi Manager", function_name="Gerente"),
        UserProfile(id="admin-1", email="admin1@example.com", full_name="Admin Um", is_admin=True),
        UserProfile(id="admin-2", email="admin2@example.com", full_name="Admin Dois", is_admin=True),
        UserProfile(id="admin-off", email="off@example.com", full_name="Admin Inativo", is_admin=True, is_active=False),
    ):
        store.add_user(user)
    return store


@pytest.fixture
def gateway():
    return InMemoryNotificationGateway()


@pytest.fixture
def submission_store(db_path):
    return SqliteSubmissionStore(db_path)


@pytest.fixture
def pair_store(db_path):
    return SqliteCrossValidationStore(db_path)


@pytest.fixture
def plan_store(db_path):
    return SqliteActionPlanStore(db_path)


@pytest.fixture
def notification_store(db_path):
    return SqliteNotificationStore(db_path)
