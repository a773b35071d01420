"""Pytest configuration and fixtures."""

import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cluster_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from bootstrapper.config import ApplicationsMode, Config, ExposureMethod  # noqa: E402


@pytest.fixture
def charts_dir(tmp_path: Path) -> Path:
    """Chart directory with the Argo CD values files in place."""
    charts = tmp_path / "charts"
    argo = charts / "argo-cd"
    argo.mkdir(parents=True)
    (argo / "values.yaml").write_text("server: {}\n")
    (argo / "values-ingress.yaml").write_text("server:\n  ingress:\n    enabled: true\n")
    return charts


@pytest.fixture
def cert_file(tmp_path: Path) -> Path:
    cert = tmp_path / "certs" / "server-cert.crt"
    cert.parent.mkdir(parents=True)
    cert.write_text("-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n")
    return cert


@pytest.fixture
def config(charts_dir: Path, cert_file: Path) -> Config:
    """Non-interactive configuration: port-forward on 8080, applications deployed."""
    return Config(
        namespace="automation-assessment",
        exposure_method=ExposureMethod.PORT_FORWARD,
        deploy_applications=ApplicationsMode.YES,
        charts_dir=charts_dir,
        ssl_cert_path=cert_file,
        port_forward_port=8080,
        credential_poll_interval_seconds=0.0,
    )


@pytest.fixture(autouse=True)
def restore_root_logger() -> Iterator[None]:
    """Undo handler changes made by setup_logging()."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
