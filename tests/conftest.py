"""
Pytest configuration and fixtures for vpn-manager tests.
"""

import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))
# Test helpers (fakes.py)
sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config_path(temp_dir: Path) -> Path:
    """Path for a temporary config file."""
    return temp_dir / "config.yml"


@pytest.fixture
def sample_config_yaml() -> str:
    """Two VPN interfaces, one LAN interface."""
    return """
vpn-interfaces:
  - name: wg0
    weight: 2
    mark: "0x3e9"
  - name: wg1
    weight: 1
    mark: 0x3ea
lan-interfaces:
  - br-lan
no-vpn-ips:
  - 192.168.0.0/16
  - 10.0.0.0/8
ping-addresses:
  - 8.8.8.8
ping-timeout-seconds: 3
probe-failure-threshold: 3
manage-routes: false
"""


@pytest.fixture
def fake_gateway():
    """In-memory nft/ip gateway."""
    from fakes import FakeGateway
    return FakeGateway()
