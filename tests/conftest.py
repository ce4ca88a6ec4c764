from __future__ import annotations

import sqlite3
from typing import Iterator

import pytest

from config import Config, set_config
from database import init_database
from fakes import FakeYouTube
from youtube_api import YouTubeFetcher


@pytest.fixture(autouse=True)
def test_config(tmp_path) -> Iterator[Config]:
    cfg = Config(
        database_backend="turso",
        database_url=f"file:{tmp_path / 'test.db'}",
        log_dir=str(tmp_path / "logs"),
        api_max_retries=0,
        api_requests_per_second=0,
        db_max_retries=0,
    )
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture
def conn() -> Iterator[sqlite3.Connection]:
    connection = sqlite3.connect(":memory:")
    init_database(connection)
    yield connection
    connection.close()


@pytest.fixture
def youtube() -> FakeYouTube:
    return FakeYouTube()


@pytest.fixture
def fetcher(youtube: FakeYouTube) -> YouTubeFetcher:
    return YouTubeFetcher(youtube=youtube)
