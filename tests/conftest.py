"""Shared fixtures: settings in tmp_path, SQLite session, fake tool chain."""

from collections.abc import AsyncGenerator
import io
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ml2_backend.config import Settings
from ml2_backend.database import create_tables
from ml2_backend.models import User
from ml2_backend.pipeline.invoker import InvocationResult
from ml2_backend.pipeline.locks import ProjectLocks
from ml2_backend.pipeline.orchestrator import ProjectPipeline
from ml2_backend.repository import ProjectRepository
from ml2_backend.storage import StorageService
from tests.fakes import FakeInvoker, Upload


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        storage_path=tmp_path / "storage",
        scripts_path=tmp_path / "scripts",
        conda_path=tmp_path / "conda" / "bin",
        execution_time_project=5,
        execution_time_images=5,
        reader_grace_sec=0.5,
    )


@pytest.fixture
async def session_maker(settings: Settings):
    engine = create_async_engine(settings.database_url, echo=False)
    await create_tables(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
async def user(db_session: AsyncSession) -> User:
    user = User(name="u1")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def other_user(db_session: AsyncSession) -> User:
    user = User(name="u2")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def storage(settings: Settings) -> StorageService:
    return StorageService(settings)


@pytest.fixture
def invoker() -> FakeInvoker:
    """Fake tool chain that behaves like the real tools on the happy path.

    - converter: prints `<stem>_converted.xml` next to the original and writes it
    - m2c: writes `<stem>.thingml` into the destination directory
    - generator: fills the -o directory with a small project tree
    - mvn: drops the runnable jar into the execution directory
    - jar: prints two lines
    """
    fake = FakeInvoker()

    def convert(program, args):
        original = Path(args[-1])
        converted = original.with_name(f"{original.stem}_converted.xml")
        converted.write_text("<emf/>")
        return InvocationResult(output=f"converting {original.name}\n{converted}\n", exit_code=0)

    def m2c(program, args):
        converted, destination = Path(args[-2]), Path(args[-1])
        stem = converted.stem.removesuffix("_converted")
        model = destination / f"{stem}.thingml"
        model.write_text("thing Foo {}")
        return InvocationResult(output=str(model), exit_code=0)

    def generate(program, args):
        destination = Path(args[args.index("-o") + 1])
        (destination / "python_java" / "src").mkdir(parents=True, exist_ok=True)
        (destination / "python_java" / "pom.xml").write_text("<project/>")
        (destination / "python_java" / "src" / "Main.java").write_text("class Main {}")
        return InvocationResult(output="Generating code...\nDone", exit_code=0)

    def package(program, args):
        target = Path(args[args.index("-f") + 1]).parent / "target"
        target.mkdir(parents=True, exist_ok=True)
        (target / "app-1.0-jar-with-dependencies.jar").write_bytes(b"PK")
        return InvocationResult(output="[INFO] BUILD SUCCESS", exit_code=0)

    fake.on("sirius_web_to_desktop.jar", convert)
    fake.on("m2c.jar", m2c)
    fake.on("mlquadrat.jar", generate)
    fake.on("mvn", package)
    fake.prints("app-1.0-jar-with-dependencies.jar", "epoch 1\nepoch 2")
    return fake


@pytest.fixture
def pipeline(db_session, storage, invoker, settings) -> ProjectPipeline:
    return ProjectPipeline(ProjectRepository(db_session), storage, invoker, settings, ProjectLocks())


@pytest.fixture
def make_upload():
    def _make(filename: str = "model.xml", content: bytes = b"<sirius/>") -> Upload:
        return Upload(filename=filename, file=io.BytesIO(content))

    return _make
