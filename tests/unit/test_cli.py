from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from receiptsync.errors import AuthError
from receiptsync.integrations.exchange_rates import cache_key
from receiptsync.local_store import LocalStore
from receiptsync.main import app
from receiptsync.models import ExchangeRateEntry
from tests.fakes import FakeGateway
from tests.utils import clean_cli_output

pytestmark = pytest.mark.unit

runner = CliRunner()

CREDENTIALS = {"RECEIPTSYNC_EMAIL": "alice@example.com", "RECEIPTSYNC_PASSWORD": "secret"}


def notification(id, title, read=False, priority="medium"):
    return {
        "id": id,
        "recipient_id": "user-1",
        "type": "claim_submitted",
        "priority": priority,
        "title": title,
        "message": "Alice submitted a claim",
        "read_at": datetime.now(UTC).isoformat() if read else None,
        "archived_at": None,
        "created_at": "2025-06-01T09:30:00+00:00",
    }


@pytest.fixture
def gateway():
    return FakeGateway(
        tables={
            "notifications": [
                notification("n-1", "Claim submitted", priority="high"),
                notification("n-2", "Claim approved", read=True),
            ],
            "custom_categories": [
                {"id": "cat-1", "user_id": "user-1", "name": "Travel", "color": "#EC4899", "icon": "plane"},
            ],
        }
    )


@pytest.fixture
def mock_session(gateway):
    with patch("receiptsync.main.open_session", new=AsyncMock(return_value=gateway)) as mock:
        yield mock


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    clean_stdout = clean_cli_output(result.stdout)
    for command in ("notifications", "mark-read", "watch", "upload", "rates", "categories"):
        assert command in clean_stdout


def test_notifications_lists_with_counters(mock_session):
    result = runner.invoke(app, ["notifications"], env=CREDENTIALS)

    assert result.exit_code == 0
    assert "* 2025-06-01 09:30 [high] Claim submitted - Alice submitted a claim" in result.stdout
    assert "  2025-06-01 09:30 [medium] Claim approved" in result.stdout
    assert "Unread: 1 (high priority: 1)" in result.stdout
    mock_session.assert_awaited_once()
    _, email, password = mock_session.call_args.args
    assert (email, password) == ("alice@example.com", "secret")


def test_notifications_unread_only(mock_session):
    result = runner.invoke(app, ["notifications", "--unread-only"], env=CREDENTIALS)
    assert result.exit_code == 0
    assert "Claim approved" not in result.stdout


def test_notifications_sign_in_failure():
    failing = AsyncMock(side_effect=AuthError("Invalid login credentials"))
    with patch("receiptsync.main.open_session", new=failing):
        result = runner.invoke(app, ["notifications"], env=CREDENTIALS)
    assert result.exit_code == 1
    assert "Error fetching notifications: Invalid login credentials" in result.output


def test_mark_read_requires_target():
    result = runner.invoke(app, ["mark-read"], env=CREDENTIALS)
    assert result.exit_code == 1
    assert "Provide a notification ID or --all" in result.output


def test_mark_read_single(mock_session, gateway):
    result = runner.invoke(app, ["mark-read", "n-1"], env=CREDENTIALS)
    assert result.exit_code == 0
    assert "Done. Unread: 0" in result.stdout
    assert gateway.rows("notifications")[0]["read_at"] is not None


def test_upload_extract_requires_api_key(tmp_path):
    image = tmp_path / "receipt.jpg"
    image.write_bytes(b"\xff" * 2048)
    env = {**CREDENTIALS, "ANTHROPIC_API_KEY": ""}

    result = runner.invoke(app, ["upload", str(image), "--extract"], env=env)

    assert result.exit_code == 1
    assert "ANTHROPIC_API_KEY is required for --extract" in result.output


def test_upload_batch_reports_each_file(tmp_path, mock_session, gateway):
    good = tmp_path / "a.jpg"
    good.write_bytes(b"\xff" * 2048)
    tiny = tmp_path / "b.png"
    tiny.write_bytes(b"\xff" * 10)

    result = runner.invoke(app, ["upload-batch", str(good), str(tiny)], env=CREDENTIALS)

    assert result.exit_code == 1
    assert "a.jpg: uploaded " in result.stdout
    assert "b.png: Image file too small" in result.output
    assert "Uploaded 1 of 2" in result.stdout
    assert len(gateway.uploads) == 1


def test_rates_offline_from_cache(tmp_path):
    store_path = tmp_path / "store.json"
    entry = ExchangeRateEntry(
        base="MYR",
        rates={"MYR": 1.0, "USD": 0.21},
        fetched_at=datetime.now(UTC) - timedelta(days=2),
    )
    LocalStore(store_path).set(cache_key("MYR"), entry.model_dump(mode="json"))

    result = runner.invoke(
        app,
        ["rates", "myr", "--offline", "-s", "usd", "-s", "jpy"],
        env={"RECEIPTSYNC_STORE_PATH": str(store_path)},
    )

    assert result.exit_code == 0
    assert "Rates for MYR fetched" in result.stdout
    assert "(stale)" in result.stdout
    assert "USD: 0.2100" in result.stdout
    assert "JPY: n/a" in result.output


def test_rates_offline_without_cache(tmp_path):
    result = runner.invoke(
        app,
        ["rates", "--offline"],
        env={"RECEIPTSYNC_STORE_PATH": str(tmp_path / "store.json")},
    )
    assert result.exit_code == 1
    assert "Error fetching exchange rates" in result.output


def test_categories(mock_session):
    result = runner.invoke(app, ["categories"], env=CREDENTIALS)
    assert result.exit_code == 0
    assert "Travel (#EC4899, plane): 0" in result.stdout
