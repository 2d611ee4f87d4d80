"""Unit tests for the resync CLI"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

from knowledge_pipeline.exceptions import SourceNotFoundError
from knowledge_pipeline.models.sync_result import SyncOutcome, SyncRunResult
from knowledge_pipeline.resync import main, parse_args


def _result(success: bool) -> SyncRunResult:
    now = datetime.now(UTC)
    return SyncRunResult(
        source_id="source-1",
        success=success,
        outcome=SyncOutcome.SUCCESS if success else SyncOutcome.FAILURE,
        errors=[] if success else ["HTTP 404: not found"],
        started_at=now,
        finished_at=now,
        duration_seconds=0.0,
    )


def _api(resync: AsyncMock) -> MagicMock:
    api = MagicMock()
    api.initialize = AsyncMock()
    api.close = AsyncMock()
    api.resync_knowledge_source = resync
    return api


def test_parse_args():
    args = parse_args(["source-1", "--force", "--db-path", "/tmp/k.db"])

    assert args.source_id == "source-1"
    assert args.force is True
    assert args.db_path == "/tmp/k.db"
    assert parse_args(["source-1"]).force is False


@patch("knowledge_pipeline.resync.KnowledgeAPI")
def test_successful_resync_exits_zero(mock_api_cls):
    api = _api(AsyncMock(return_value=_result(True)))
    mock_api_cls.create.return_value = api

    assert main(["source-1", "--force"]) == 0
    api.resync_knowledge_source.assert_awaited_once_with("source-1", force=True)
    api.close.assert_awaited_once()


@patch("knowledge_pipeline.resync.KnowledgeAPI")
def test_failed_resync_exits_one(mock_api_cls):
    mock_api_cls.create.return_value = _api(AsyncMock(return_value=_result(False)))

    assert main(["source-1"]) == 1


@patch("knowledge_pipeline.resync.KnowledgeAPI")
def test_unknown_source_exits_one_and_closes(mock_api_cls):
    api = _api(AsyncMock(side_effect=SourceNotFoundError("source-1")))
    mock_api_cls.create.return_value = api

    assert main(["source-1"]) == 1
    api.close.assert_awaited_once()
