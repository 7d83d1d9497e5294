import pytest

from tests.fakes import FakeBot, FakeDecisionHandler, FakeGateway


@pytest.fixture
def fake_bot() -> FakeBot:
    return FakeBot()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def decision_handler() -> FakeDecisionHandler:
    return FakeDecisionHandler()
