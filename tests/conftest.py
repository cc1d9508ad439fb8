from __future__ import annotations

from types import SimpleNamespace
from typing import List, Optional

import pytest

import ad_core
from credentials import Session

API_KEY = "sk-test-0123456789abcdef"


# -----------------------------
# Test doubles
# -----------------------------
class FakeChatCompletions:
    """Returns queued texts; queued exceptions are raised instead."""

    def __init__(self, responses: List):
        self._responses = list(responses)
        self.calls: List[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=item))],
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=34),
        )


class FakeImages:
    def __init__(self, responses: List):
        self._responses = list(responses)
        self.calls: List[dict] = []

    def generate(self, **kwargs):
        self.calls.append(kwargs)
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return SimpleNamespace(data=[SimpleNamespace(url=item)])


class FakeOpenAI:
    def __init__(self, chat: Optional[List] = None, images: Optional[List] = None):
        self.completions = FakeChatCompletions(chat or [])
        self.chat = SimpleNamespace(completions=self.completions)
        self.images = FakeImages(images or [])

    @property
    def chat_calls(self) -> List[dict]:
        return self.completions.calls

    @property
    def image_calls(self) -> List[dict]:
        return self.images.calls

    @property
    def call_count(self) -> int:
        return len(self.chat_calls) + len(self.image_calls)


# -----------------------------
# Fixtures
# -----------------------------
@pytest.fixture
def session() -> Session:
    return Session(API_KEY)


@pytest.fixture
def events() -> List[dict]:
    return []


@pytest.fixture
def make_pipeline(session, events):
    def _make(chat=None, images=None, config=None):
        client = FakeOpenAI(chat=chat, images=images)
        pipeline = ad_core.AdPipeline(
            session,
            config=config,
            progress_cb=events.append,
            client=client,
            run_id="test",
        )
        return pipeline, client

    return _make
