"""Shared pytest fixtures."""

from __future__ import annotations

import os
from datetime import datetime

import pytest

from termagent.ai.client import ApproxByteCounter
from termagent.ai.orchestration import Budget, ContextBudgetManager
from termagent.ai.prompts import SystemPromptBuilder


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in list(os.environ):
        if name.startswith("TERMAGENT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TERMAGENT_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def prompt_builder() -> SystemPromptBuilder:
    return SystemPromptBuilder(cwd="/work/project", clock=lambda: datetime(2024, 5, 1, 9, 30, 0))


@pytest.fixture
def budget_manager() -> ContextBudgetManager:
    return ContextBudgetManager(Budget(max_context_tokens=128_000, target_ratio=0.8), counter=ApproxByteCounter())
