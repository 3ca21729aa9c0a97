from pathlib import Path
from unittest.mock import Mock
import pytest

from tally_dashboard.config import ConfigResolver, ConfigStore, DashboardSettings
from tally_dashboard.dashboard import TallyDashboard

FIX = Path(__file__).parent / "fixtures"

COMPANY = "ACME (2024-25)"


def read(p): return (FIX / p).read_text(encoding="utf-8")


def ok(text):
    """A 200 response carrying text."""
    return Mock(status_code=200, reason="OK", text=text)


@pytest.fixture
def settings(tmp_path):
    return DashboardSettings(
        dev_mode=False,
        tally_url="http://127.0.0.1:9000",
        tally_company=COMPANY,
        request_timeout=5,
        cache_ttl=300,
        count_ttl=300,
        inventory_cache_ttl=600,
        page_size=100,
        prefetch=False,
        retry_attempts=1,
        retry_delay=0,
        config_file=str(tmp_path / "config.json"),
        log_file=None,
    )


@pytest.fixture
def resolver(settings):
    return ConfigResolver(settings, ConfigStore(settings.config_file))


@pytest.fixture
def session():
    s = Mock()
    s.headers = {}
    return s


@pytest.fixture
def dashboard(settings, session):
    dash = TallyDashboard(settings, session=session)
    yield dash
    dash.close()
