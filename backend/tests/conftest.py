"""Shared fixtures: a throwaway SQLite database, in-memory storage and a
scripted stand-in for ffmpeg/ffprobe."""

import json
import os
from typing import Callable, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from streamvault.core.database import Base
from streamvault.core.storage import MemoryStorage, Storage, StorageConfig
from streamvault.modules.media import models  # noqa: F401  registers tables
from streamvault.modules.transcoding.runner import ToolResult

DEFAULT_PROBE_JSON = json.dumps({
    "streams": [
        {
            "codec_name": "h264",
            "width": 1920,
            "height": 1080,
            "duration": "125.400000",
            "bit_rate": "4800000",
        }
    ],
    "format": {"duration": "125.433000", "bit_rate": "4950000"},
})


class FakeToolRunner:
    """Plays ffprobe/ffmpeg without running anything.

    Encodes write a small file at the output path; a profile whose name is
    in ``failing_profiles`` exits non-zero instead.
    """

    def __init__(self):
        self.calls: list[tuple[list[str], float]] = []
        self.probe_stdout: str = DEFAULT_PROBE_JSON
        self.probe_exit_status: int = 0
        self.failing_profiles: set[str] = set()
        self.thumbnail_fails: bool = False
        self.thumbnail_empty: bool = False
        self.before_invoke: Optional[Callable[[list[str], float], None]] = None
        self.seen_inputs: list[str] = []

    def invoke(self, args: Sequence[str], timeout: float) -> ToolResult:
        args = list(args)
        self.calls.append((args, timeout))
        if self.before_invoke is not None:
            self.before_invoke(args, timeout)

        if args[0].endswith("ffprobe"):
            self.seen_inputs.append(args[-1])
            if self.probe_exit_status != 0:
                return ToolResult(stdout="", exit_status=self.probe_exit_status, stderr="Invalid data found")
            return ToolResult(stdout=self.probe_stdout, exit_status=0)

        output_path = args[-1]
        self.seen_inputs.append(args[args.index("-i") + 1])

        if "-frames:v" in args:
            if self.thumbnail_fails:
                return ToolResult(stdout="", exit_status=1, stderr="Output file is empty")
            with open(output_path, "wb") as f:
                f.write(b"" if self.thumbnail_empty else b"\xff\xd8\xff\xe0fake-jpeg")
            return ToolResult(stdout="", exit_status=0)

        profile = os.path.basename(output_path).rsplit(".", 1)[0].split("-", 1)[1]
        if profile in self.failing_profiles:
            return ToolResult(stdout="", exit_status=1, stderr=f"Error while encoding {profile}")
        with open(output_path, "wb") as f:
            f.write(f"fake-{profile}-rendition".encode())
        return ToolResult(stdout="", exit_status=0)

    def encode_calls(self) -> list[list[str]]:
        return [
            args for args, _ in self.calls
            if not args[0].endswith("ffprobe") and "-frames:v" not in args
        ]


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'streamvault-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as db_session:
        yield db_session


@pytest.fixture
def memory_backend() -> MemoryStorage:
    return MemoryStorage(StorageConfig(backend="memory", bucket="test-media"))


@pytest.fixture
def storage(memory_backend) -> Storage:
    return Storage(config=memory_backend.config, backend=memory_backend)


@pytest.fixture
def tool_runner() -> FakeToolRunner:
    return FakeToolRunner()
