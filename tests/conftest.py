from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from cognivault.config import Settings
from cognivault.errors import ProviderUnavailable
from cognivault.llm import LLMProvider
from cognivault.main import create_app
from cognivault.runtime import build_runtime

AUTH_HEADERS = {"Authorization": "Bearer alice"}
OTHER_AUTH_HEADERS = {"Authorization": "Bearer bob"}

BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class ScriptedLLM(LLMProvider):
    """Returns queued responses in order; raises ProviderUnavailable once they run out."""
    name = "scripted"

    def __init__(self, responses: Optional[List[str]] = None, image_text: Optional[str] = None):
        self.responses = list(responses or [])
        self.image_text = image_text
        self.prompts: List[str] = []

    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise ProviderUnavailable("scripted responses exhausted")
        return self.responses.pop(0)

    async def extract_text_from_image(self, data: bytes, mime_type: str) -> Optional[str]:
        return self.image_text


def make_chunk(
    chunk_id: str,
    tags: List[str],
    minutes: int = 0,
    user_id: str = "alice",
    text: str = "Some chunk text.",
    source_file_id: str = "direct_input",
) -> dict:
    return {
        "id": chunk_id,
        "user_id": user_id,
        "source_file_id": source_file_id,
        "chunk_index": 0,
        "text": text,
        "summary": text,
        "tags": tags,
        "entities": [],
        "relations": [],
        "vector_id": None,
        "graph_node_id": None,
        "created_at": BASE_TIME + timedelta(minutes=minutes),
    }


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def runtime(settings):
    return build_runtime(settings)


@pytest.fixture
def client(runtime):
    app = create_app(runtime=runtime)
    with TestClient(app) as c:
        yield c
