"""Pytest configuration and fixtures."""

from datetime import date
from unittest.mock import AsyncMock

import pytest

from strangler.models.position import Position
from strangler.models.state_machine import PositionState, StateMachine
from strangler.services.broker import OrderResponse, PositionItem
from strangler.services.ledger import InMemoryLedger
from strangler.utils.option_symbol import build_option_symbol

EXPIRATION = date(2024, 3, 15)


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "ERROR")


@pytest.fixture(autouse=True)
def _reset_config_singleton():
    """Ensure each test gets a fresh Config singleton.

    Without this, monkeypatch.setenv in individual tests would be
    ignored because get_config() returns the cached singleton from
    a previous test.
    """
    from strangler.config.base import reset_config

    reset_config()
    yield
    reset_config()


def make_position(
    state: PositionState = PositionState.OPEN,
    quantity: int = 2,
    credit: float = 3.5,
    put_strike: float = 560.0,
    call_strike: float = 610.0,
    expiration: date = EXPIRATION,
    symbol: str = "SPY",
    position_id: str | None = None,
    **fields,
) -> Position:
    """Build a position already sitting in the given state."""
    position = Position.new(
        symbol=symbol,
        put_strike=put_strike,
        call_strike=call_strike,
        expiration=expiration,
        quantity=quantity,
        position_id=position_id,
    )
    position.credit_received = credit
    position.state_machine = StateMachine(state)
    for name, value in fields.items():
        setattr(position, name, value)
    return position


def make_leg(
    option_type: str,
    strike: float,
    quantity: float,
    cost_basis: float = 0.0,
    expiration: date = EXPIRATION,
    underlying: str = "SPY",
) -> PositionItem:
    """Broker leg for an option on the given strike."""
    return PositionItem(
        symbol=build_option_symbol(underlying, expiration, option_type, strike),
        quantity=quantity,
        cost_basis=cost_basis,
    )


def make_broker(legs: list[PositionItem] | None = None) -> AsyncMock:
    """AsyncMock broker reporting the given legs."""
    broker = AsyncMock()
    broker.get_positions.return_value = list(legs or [])
    broker.close_strangle_position.return_value = OrderResponse(id="1001", status="pending")
    broker.get_order_status.return_value = OrderResponse(id="1001", status="pending", quantity=2)
    broker.get_market_calendar.return_value = {}
    return broker


@pytest.fixture
def position_factory():
    return make_position


@pytest.fixture
def leg_factory():
    return make_leg


@pytest.fixture
def broker_factory():
    return make_broker


@pytest.fixture
def ledger():
    """Empty in-memory ledger."""
    return InMemoryLedger()


@pytest.fixture
def broker():
    """Broker with no positions."""
    return make_broker()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "slow: Tests that take a long time to run")
