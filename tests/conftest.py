"""
Pytest configuration and shared fakes.

Nothing here touches the network or runs ffmpeg: encoders, probers and
upstream servers are replaced by in-process fakes.
"""

import asyncio
from pathlib import Path
from typing import Optional

import pytest
from dotenv import load_dotenv

from adflow_proxy.ads.catalog import AdCreative, AdSegment, StaticAdCatalog
from adflow_proxy.transcoder.encoder import BaseEncoder, TranscodeError, TranscodeJob
from adflow_proxy.transcoder.formats import VideoFormat
from adflow_proxy.transcoder.prober import BaseProber

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeEncoder(BaseEncoder):
    """Writes dummy segments instead of running ffmpeg, and counts its invocations."""

    def __init__(self, segment_count: int = 3, delay: float = 0.05, fail: bool = False):
        self.segment_count = segment_count
        self.delay = delay
        self.fail = fail
        self.jobs: list[TranscodeJob] = []
        self.concat_lists: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.jobs)

    async def encode(self, job: TranscodeJob) -> None:
        self.jobs.append(job)
        if job.is_concat_list:
            self.concat_lists.append(Path(job.source_path).read_text())
        await asyncio.sleep(self.delay)
        if self.fail:
            raise TranscodeError("ffmpeg exited with code 1")
        for index in range(self.segment_count):
            (Path(job.output_dir) / f"segment{index:03d}.ts").write_bytes(f"{job.target}:{index}".encode())


class FakeProber(BaseProber):
    def __init__(self, result: Optional[VideoFormat] = None):
        self.result = result
        self.urls: list[str] = []

    async def probe(self, segment_url: str) -> Optional[VideoFormat]:
        self.urls.append(segment_url)
        return self.result


def make_creative(
    creative_id: str, weight: int = 1, force_display: bool = False, segment_count: int = 1, status: str = "active"
) -> AdCreative:
    return AdCreative(
        id=creative_id,
        weight=weight,
        force_display=force_display,
        status=status,
        segments=tuple(
            AdSegment(quality=index, filepath=f"/uploads/ads/{creative_id}/segment{index:03d}.ts")
            for index in range(segment_count)
        ),
    )


@pytest.fixture
def creative_factory():
    return make_creative


@pytest.fixture
def encoder_factory():
    return FakeEncoder


@pytest.fixture
def prober_factory():
    return FakeProber


@pytest.fixture
def fake_encoder():
    return FakeEncoder()


@pytest.fixture
def single_creative_catalog():
    return StaticAdCatalog([make_creative("ad1")])
