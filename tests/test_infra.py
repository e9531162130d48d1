from datetime import datetime, timezone

import requests

from blockreceipt.core.config import Config, config
from blockreceipt.infra import webhook
from blockreceipt.infra.rate_limiter import RateLimiter
from blockreceipt.models.task import NFTGrantResult, ReceiptPayload, Task, TaskStatus, TaskType


def test_config_priority_and_json(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("# comment\nMIN_RECEIPT_TOTAL='7.5'\nPIPELINE_WORKERS=abc\n", encoding="utf-8")
    (tmp_path / "marketplace.json").write_text('{"marketplace": {"listings": []}}', encoding="utf-8")
    monkeypatch.setenv("MIN_RECEIPT_TOTAL", "1")
    monkeypatch.setenv("COLLABORATOR_TIMEOUT", "12")

    conf = Config(tmp_path)
    # .env 优先于环境变量
    assert conf.get_float("MIN_RECEIPT_TOTAL", 5.0) == 7.5
    assert conf.get_float("COLLABORATOR_TIMEOUT", 30) == 12.0
    assert conf.get_int("PIPELINE_WORKERS", 1) == 1
    assert conf.get("MISSING_KEY", "fallback") == "fallback"
    assert conf.get_json("marketplace", "listings") == []
    assert conf.get_json("marketplace", "nope", default="x") == "x"


def test_config_bool_values(tmp_path):
    (tmp_path / ".env").write_text("LOG_TO_FILE=false\nCONFIG_FLAG=Yes\n", encoding="utf-8")
    conf = Config(tmp_path)
    assert conf.get_bool("LOG_TO_FILE", True) is False
    assert conf.get_bool("CONFIG_FLAG") is True
    assert conf.get_bool("NOT_SET_ANYWHERE", True) is True


def test_config_reload_picks_up_changes(tmp_path):
    env = tmp_path / ".env"
    env.write_text("RATE_LIMIT_MAX=3\n", encoding="utf-8")
    conf = Config(tmp_path)
    assert conf.get_int("RATE_LIMIT_MAX") == 3

    env.write_text("RATE_LIMIT_MAX=9\n", encoding="utf-8")
    conf.reload()
    assert conf.get_int("RATE_LIMIT_MAX") == 9


def test_rate_limiter_window():
    now = [1000.0]
    limiter = RateLimiter(clock=lambda: now[0])

    assert limiter.allow("purchase:0xA", 2, 60) is True
    assert limiter.allow("purchase:0xA", 2, 60) is True
    assert limiter.allow("purchase:0xA", 2, 60) is False
    # 不同钱包互不影响
    assert limiter.allow("purchase:0xB", 2, 60) is True

    now[0] += 61
    assert limiter.allow("purchase:0xA", 2, 60) is True


def _failed_task():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Task(type=TaskType.FALLBACK_MINT, data=ReceiptPayload(), status=TaskStatus.FAILED,
                error="Fallback NFT minting failed", wallet_address="0xA", receipt_id="r1",
                created_at=now, updated_at=now)


def test_webhook_skipped_without_url(mocker):
    mocker.patch.object(config, "get", return_value=None)
    post = mocker.patch("blockreceipt.infra.webhook.requests.post")
    webhook.notify_task(_failed_task())
    post.assert_not_called()


def test_webhook_posts_terminal_task(mocker):
    conf = {"RECEIPT_WEBHOOK_URL": "http://hooks.local/receipt"}
    mocker.patch.object(config, "get", side_effect=lambda k, default=None: conf.get(k, default))
    post = mocker.patch("blockreceipt.infra.webhook.requests.post")

    task = _failed_task()
    webhook.notify_task(task)

    post.assert_called_once()
    args, kwargs = post.call_args
    assert args[0] == "http://hooks.local/receipt"
    assert kwargs["json"]["task_id"] == task.id
    assert kwargs["json"]["status"] == "failed"
    assert kwargs["json"]["error"] == "Fallback NFT minting failed"
    assert kwargs["timeout"] == 5


def test_webhook_errors_are_logged_not_raised(mocker):
    conf = {"RECEIPT_WEBHOOK_URL": "http://hooks.local/receipt"}
    mocker.patch.object(config, "get", side_effect=lambda k, default=None: conf.get(k, default))
    mocker.patch("blockreceipt.infra.webhook.requests.post",
                 side_effect=requests.ConnectionError("refused"))
    log = mocker.patch.object(webhook.logger, "error")

    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    task = Task(type=TaskType.NFT_PURCHASE, data=ReceiptPayload(), status=TaskStatus.COMPLETED,
                result=NFTGrantResult(success=True, token_id="1"), wallet_address="0xA",
                receipt_id="r1", created_at=now, updated_at=now)
    webhook.notify_task(task)
    log.assert_called_once()
