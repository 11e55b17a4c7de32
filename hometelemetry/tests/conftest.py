import sys
import pathlib

import pytest_asyncio

# Ensure the project root is importable so `import hometelemetry` works
ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep a developer's local .env out of the test run.
import pydantic_settings.sources as _psources  # noqa: E402

_psources.DotEnvSettingsSource._read_env_files = lambda self, *args, **kwargs: {}

from hometelemetry.core.database import connect_database  # noqa: E402
from hometelemetry.services.store import TelemetryStore  # noqa: E402


@pytest_asyncio.fixture
async def store(tmp_path):
    sessionmaker = await connect_database(f"sqlite+aiosqlite:///{tmp_path / 'readings.db'}")
    telemetry_store = TelemetryStore(sessionmaker)
    yield telemetry_store
    await telemetry_store.close()
