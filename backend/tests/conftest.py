import pytest

from expense_ingest.core.config import get_settings
from expense_ingest.services.ai.common.local_runtime import get_local_runtime


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests patch env vars; a cached Settings (or a runtime built from one)
    # must not leak into the next test.
    get_settings.cache_clear()
    get_local_runtime.cache_clear()
    yield
    get_settings.cache_clear()
    get_local_runtime.cache_clear()
