"""Shared fixtures: settings, tokenizer-backed calculator, execution context."""

import pytest

from revu.agent.models import ExecutionContext
from revu.tokens.calculator import TokenCalculator

from tests.fakes import CharCountTokenizer, make_settings


@pytest.fixture
def settings():
    return make_settings(max_iterations=5, max_tool_calls=10, max_subagents_per_session=3)


@pytest.fixture
def calculator():
    return TokenCalculator(CharCountTokenizer(max_input_tokens=8000))


@pytest.fixture
def context():
    return ExecutionContext(label="Test")
