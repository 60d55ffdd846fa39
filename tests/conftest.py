# opsledger End-to-End Suite - Shared Configuration and Fixtures
#
# This module provides:
# - Test database provisioning (ephemeral SQLite per test run)
# - A live backend server managed per session
# - An HTTP client and data factories for lots and batches
# - Failure message formatting

import os
import sys
import time
import tempfile
import subprocess
import shutil
from pathlib import Path
from typing import Generator, Optional, Dict, Any
from dataclasses import dataclass

import pytest
import httpx

# Add backend to path for imports
REPO_ROOT = Path(__file__).parent.parent
BACKEND_DIR = REPO_ROOT / "backend"
sys.path.insert(0, str(BACKEND_DIR))


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class TestConfig:
    """Test configuration with environment variable overrides."""
    backend_base_url: str = os.environ.get("TEST_BACKEND_URL", "http://127.0.0.1:5001")

    # Timeouts
    request_timeout: float = float(os.environ.get("TEST_REQUEST_TIMEOUT", "30"))
    server_startup_timeout: float = float(os.environ.get("TEST_SERVER_STARTUP_TIMEOUT", "30"))

    # Concurrency (for stress tests)
    stress_users: int = int(os.environ.get("TEST_STRESS_USERS", "10"))
    stress_duration: int = int(os.environ.get("TEST_STRESS_DURATION", "60"))

    # Business dates used by the factories; must not be in the future
    received_date: str = os.environ.get("TEST_RECEIVED_DATE", "2025-03-01")
    batch_date: str = os.environ.get("TEST_BATCH_DATE", "2025-03-10")


# =============================================================================
# FAILURE MESSAGE HELPER
# =============================================================================

class TestFailure(Exception):
    """
    Custom exception with detailed, human-readable failure messages.

    Structure:
    1. Scenario: What was being tested
    2. Expected: What should have happened
    3. Actual: What actually happened
    4. Likely Cause: Most probable reason for failure
    5. Code Location: Where to look in the codebase
    """

    def __init__(
        self,
        scenario: str,
        expected: str,
        actual: str,
        likely_cause: str,
        code_location: str,
        response: Optional[httpx.Response] = None,
        extra_context: Optional[Dict[str, Any]] = None
    ):
        self.scenario = scenario
        self.expected = expected
        self.actual = actual
        self.likely_cause = likely_cause
        self.code_location = code_location
        self.response = response
        self.extra_context = extra_context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [
            "",
            "=" * 80,
            "TEST FAILURE DETAILS",
            "=" * 80,
            f"SCENARIO: {self.scenario}",
            "-" * 80,
            f"EXPECTED: {self.expected}",
            f"ACTUAL: {self.actual}",
            "-" * 80,
            f"LIKELY CAUSE: {self.likely_cause}",
            f"CODE LOCATION: {self.code_location}",
        ]

        if self.response is not None:
            lines.extend([
                "-" * 80,
                f"HTTP STATUS: {self.response.status_code}",
                f"RESPONSE BODY: {self.response.text[:1000]}",
            ])

        if self.extra_context:
            lines.append("-" * 80)
            lines.append("EXTRA CONTEXT:")
            for key, value in self.extra_context.items():
                lines.append(f"  {key}: {value}")

        lines.append("=" * 80)
        return "\n".join(lines)


def assert_response(
    response: httpx.Response,
    expected_status: int,
    scenario: str,
    code_location: str,
    expected_body_contains: Optional[str] = None
):
    """
    Assert HTTP response status and optionally body content.
    Raises TestFailure with detailed message on failure.
    """
    if response.status_code != expected_status:
        raise TestFailure(
            scenario=scenario,
            expected=f"HTTP {expected_status}",
            actual=f"HTTP {response.status_code}",
            likely_cause=_infer_cause(response),
            code_location=code_location,
            response=response
        )

    if expected_body_contains and expected_body_contains not in response.text:
        raise TestFailure(
            scenario=scenario,
            expected=f"Response body contains: {expected_body_contains}",
            actual=f"Response body: {response.text[:500]}",
            likely_cause="Response format changed or wrong endpoint hit",
            code_location=code_location,
            response=response
        )


def _infer_cause(response: httpx.Response) -> str:
    """Infer likely cause from response status/body."""
    if response.status_code == 404:
        return "Resource not found - wrong lot/batch id or wrong lot type in the URL"
    elif response.status_code == 400:
        return "Invalid request - missing required field, protected field or non-positive quantity"
    elif response.status_code == 409:
        return "Conflict - insufficient as-of balance, locked batch or illegal state transition"
    elif response.status_code == 503:
        return "Unavailable - identifier allocation exhausted or database unhealthy"
    elif response.status_code == 500:
        return "Server error - check backend logs for stack trace"
    else:
        return f"Unexpected status code {response.status_code}"


# =============================================================================
# HTTP CLIENT
# =============================================================================

class APIClient:
    """
    HTTP client wrapper with convenience methods.
    """

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(timeout=timeout)

    def _headers(self, extra: Optional[Dict] = None) -> Dict:
        headers = {"Content-Type": "application/json"}
        if extra:
            headers.update(extra)
        return headers

    def get(self, path: str, params: Optional[Dict] = None, **kwargs) -> httpx.Response:
        return self.client.get(
            f"{self.base_url}{path}",
            headers=self._headers(),
            params=params,
            **kwargs
        )

    def post(self, path: str, json: Optional[Dict] = None, **kwargs) -> httpx.Response:
        return self.client.post(
            f"{self.base_url}{path}",
            headers=self._headers(),
            json=json,
            **kwargs
        )

    def patch(self, path: str, json: Optional[Dict] = None, **kwargs) -> httpx.Response:
        return self.client.patch(
            f"{self.base_url}{path}",
            headers=self._headers(),
            json=json,
            **kwargs
        )

    def delete(self, path: str, **kwargs) -> httpx.Response:
        return self.client.delete(
            f"{self.base_url}{path}",
            headers=self._headers(),
            **kwargs
        )

    def balance(self, lot_type: str, lot_id: int, as_of: Optional[str] = None) -> str:
        """Ledger balance of a lot as a string quantity."""
        params = {"as_of": as_of} if as_of else None
        response = self.get(f"/api/lots/{lot_type}/{lot_id}/balance", params=params)
        assert_response(
            response, 200,
            scenario="Read lot balance",
            code_location="backend/opsledger/routes/lots.py:get_balance"
        )
        return response.json()["balance"]

    def close(self):
        """Close the HTTP client."""
        self.client.close()


# =============================================================================
# SERVER MANAGEMENT
# =============================================================================

class ServerManager:
    """
    Manages Flask backend server lifecycle for tests.
    """

    def __init__(self, config: TestConfig):
        self.config = config
        self.process: Optional[subprocess.Popen] = None
        self.db_file: Optional[Path] = None

    def start(self) -> bool:
        """Create a fresh database and start the Flask server on it."""
        temp_dir = tempfile.mkdtemp(prefix="opsledger_test_")
        self.db_file = Path(temp_dir) / "test_opsledger.sqlite3"
        db_url = f"sqlite:///{self.db_file}"

        self.initialize_db(db_url)

        env = os.environ.copy()
        env["DATABASE_URL"] = db_url
        env["FLASK_APP"] = "wsgi.py"

        self.process = subprocess.Popen(
            [sys.executable, "-m", "flask", "run", "--port", "5001"],
            cwd=str(BACKEND_DIR),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        return self._wait_for_server()

    def _wait_for_server(self) -> bool:
        """Wait for server to be responsive."""
        start_time = time.time()
        while time.time() - start_time < self.config.server_startup_timeout:
            try:
                response = httpx.get(f"{self.config.backend_base_url}/health", timeout=2.0)
                if response.status_code in (200, 503):  # 503 means degraded but running
                    return True
            except (httpx.ConnectError, httpx.TimeoutException):
                pass
            time.sleep(0.5)
        return False

    def stop(self):
        """Stop the Flask server and cleanup."""
        if self.process:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
            self.process = None

        if self.db_file and self.db_file.parent.exists():
            shutil.rmtree(self.db_file.parent, ignore_errors=True)

    @staticmethod
    def initialize_db(db_url: str):
        """Create the schema in the ephemeral database."""
        from opsledger import create_app
        from opsledger.extensions import db

        app = create_app({"SQLALCHEMY_DATABASE_URI": db_url})
        with app.app_context():
            db.create_all()
            db.session.remove()
            db.engine.dispose()


# =============================================================================
# TEST DATA FACTORIES
# =============================================================================

class TestDataFactory:
    """
    Factory for creating test data via API calls.
    """

    def __init__(self, client: APIClient, config: TestConfig):
        self.client = client
        self.config = config
        self._counter = 0

    def _next_id(self) -> int:
        self._counter += 1
        return self._counter

    def receive_lot(
        self,
        quantity: str = "100",
        lot_type: str = "raw_material",
        unit: str = "kg",
        name: Optional[str] = None,
        received_date: Optional[str] = None,
    ) -> Dict:
        """Receive a lot via API."""
        n = self._next_id()
        response = self.client.post(f"/api/lots/{lot_type}", json={
            "name": name or f"Test Material {n}",
            "unit": unit,
            "quantity_received": quantity,
            "received_date": received_date or self.config.received_date,
        })
        if response.status_code == 201:
            return response.json()
        raise TestFailure(
            scenario="Receive test lot",
            expected="HTTP 201",
            actual=f"HTTP {response.status_code}",
            likely_cause="Lot intake failed - check validation or identifier allocation",
            code_location="backend/opsledger/routes/lots.py:create_lot",
            response=response
        )

    def create_batch(self, batch_date: Optional[str] = None) -> Dict:
        """Create a draft batch via API."""
        response = self.client.post("/api/batches", json={
            "batch_date": batch_date or self.config.batch_date,
        })
        if response.status_code == 201:
            return response.json()
        raise TestFailure(
            scenario="Create batch",
            expected="HTTP 201",
            actual=f"HTTP {response.status_code}",
            likely_cause="Batch creation failed",
            code_location="backend/opsledger/routes/production.py:create_batch",
            response=response
        )

    def consume(self, batch_id: int, lot_id: int, quantity: str, lot_type: str = "raw_material") -> Dict:
        """Add a consumed-material line via API."""
        response = self.client.post(f"/api/batches/{batch_id}/materials", json={
            "lot_type": lot_type,
            "lot_id": lot_id,
            "quantity": quantity,
        })
        if response.status_code == 201:
            return response.json()
        raise TestFailure(
            scenario="Consume material into batch",
            expected="HTTP 201",
            actual=f"HTTP {response.status_code}",
            likely_cause="Consumption failed - check the lot's balance as of batch_date",
            code_location="backend/opsledger/routes/production.py:add_material",
            response=response
        )

    def declare_output(self, batch_id: int, name: str = "Flour Mix", quantity: str = "45", unit: str = "kg") -> Dict:
        """Declare a complete output via API."""
        response = self.client.post(f"/api/batches/{batch_id}/outputs", json={
            "output_name": name,
            "produced_quantity": quantity,
            "produced_unit": unit,
            "produced_goods_tag_id": "mixes",
        })
        if response.status_code == 201:
            return response.json()
        raise TestFailure(
            scenario="Declare batch output",
            expected="HTTP 201",
            actual=f"HTTP {response.status_code}",
            likely_cause="Output declaration failed - batch may be locked",
            code_location="backend/opsledger/routes/production.py:declare_output",
            response=response
        )


# =============================================================================
# PYTEST FIXTURES
# =============================================================================

@pytest.fixture(scope="session")
def test_config() -> TestConfig:
    """Provide test configuration."""
    return TestConfig()


@pytest.fixture(scope="session")
def server_manager(test_config: TestConfig) -> Generator[ServerManager, None, None]:
    """
    Manage test server lifecycle.
    Server is started once per test session.
    """
    manager = ServerManager(test_config)

    # For CI/external server mode, don't manage server
    if os.environ.get("TEST_EXTERNAL_SERVER"):
        yield manager
    else:
        if not manager.start():
            pytest.fail("Failed to start test server")
        yield manager
        manager.stop()


@pytest.fixture(scope="session")
def api_client(test_config: TestConfig, server_manager: ServerManager) -> Generator[APIClient, None, None]:
    """Provide API client for session-scoped tests."""
    client = APIClient(test_config.backend_base_url, timeout=test_config.request_timeout)
    yield client
    client.close()


@pytest.fixture
def client(api_client: APIClient) -> APIClient:
    return api_client


@pytest.fixture
def factory(client: APIClient, test_config: TestConfig) -> TestDataFactory:
    """Provide test data factory."""
    return TestDataFactory(client, test_config)


# =============================================================================
# TEST MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "smoke: Quick smoke tests for critical paths")
    config.addinivalue_line("markers", "full: Full regression tests")
    config.addinivalue_line("markers", "stress: Load/stress tests")
    config.addinivalue_line("markers", "ledger: Stock ledger and lot tests")
    config.addinivalue_line("markers", "waste: Waste and transfer tests")
    config.addinivalue_line("markers", "production: Production batch tests")
    config.addinivalue_line("markers", "concurrent: Concurrency tests")
