from __future__ import annotations

import json
import threading
import time
from types import SimpleNamespace
from typing import List, Optional

import pytest

from studysource.models import OCRResult


class FakeOCRRunner:
    """Returns a fixed result and records how many rasters it was given."""

    def __init__(self, result: Optional[OCRResult] = None):
        self.result = result or OCRResult(
            text="Figure 2: stages of the cell cycle",
            confidence=0.91,
            short_token_ratio=0.1,
            word_count=7,
            applied=True,
        )
        self.calls = 0
        self._lock = threading.Lock()

    def run(self, jpeg: bytes) -> OCRResult:
        assert jpeg[:2] == b"\xff\xd8", "OCR input must be a JPEG"
        with self._lock:
            self.calls += 1
        return self.result


class FakeCompletions:
    def __init__(self, content: Optional[str], delay: float = 0.0, error: Optional[Exception] = None):
        self.content = content
        self.delay = delay
        self.error = error
        self.requests: List[dict] = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))],
            usage=SimpleNamespace(prompt_tokens=100, completion_tokens=20, total_tokens=120),
        )


class FakeOpenAI:
    """Stand-in for openai.OpenAI exposing chat.completions.create."""

    def __init__(self, content: Optional[str] = None, delay: float = 0.0, error: Optional[Exception] = None):
        if content is None and error is None:
            content = json.dumps({
                "labels": ["G1", "S", "G2", "M"],
                "relationships": [{"from": "G1", "to": "S", "label": "checkpoint"}],
            })
        self.completions = FakeCompletions(content, delay=delay, error=error)
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def call_count(self) -> int:
        return len(self.completions.requests)


@pytest.fixture
def fake_ocr() -> FakeOCRRunner:
    return FakeOCRRunner()


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI()
