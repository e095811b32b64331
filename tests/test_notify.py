"""Tests for ntfy and webhook notifications."""

import json
import pytest
import requests
from unittest.mock import Mock, patch

from config import NotificationsConfig
from notify import build_message, send_notifications
from selfupdate import SelfUpdateHandoff
from updater import CycleReport


@pytest.fixture
def report():
    return CycleReport(total=3, updated=1, skipped=1, errored=1,
                       updated_containers=["web"], failed_containers=["db"])


class TestBuildMessage:

    def test_summary(self, report):
        message = build_message(report, "deadbeef")
        assert "Updated: web" in message
        assert "Failed: db" in message
        assert "1 updated, 1 skipped, 1 errors, 3 total" in message
        assert "cycle deadbeef" in message

    def test_self_update(self):
        report = CycleReport(handoff=SelfUpdateHandoff("h", "n", "t", "img"))
        assert "updating itself" in build_message(report)


class TestSendNotifications:

    def test_disabled(self, report):
        with patch("requests.post") as post:
            assert send_notifications(NotificationsConfig(), report) == 0
        post.assert_not_called()

    def test_quiet_cycle_not_sent(self):
        config = NotificationsConfig(ntfy={"url": "https://ntfy.sh/t"})
        with patch("requests.post") as post:
            assert send_notifications(config, CycleReport(total=2, skipped=2)) == 0
        post.assert_not_called()

    def test_ntfy(self, report):
        config = NotificationsConfig(ntfy={"url": "https://ntfy.sh/t", "priority": "high"})
        with patch("requests.post") as post:
            assert send_notifications(config, report, "deadbeef") == 1
        args, kwargs = post.call_args
        assert args[0] == "https://ntfy.sh/t"
        assert kwargs["headers"]["Priority"] == "high"
        assert kwargs["headers"]["Title"] == "HarborBuddy: containers updated"
        assert b"Updated: web" in kwargs["data"]

    def test_webhook_template(self, report):
        config = NotificationsConfig(webhook={
            "url": "https://hooks.example/x",
            "method": "put",
            "body_template": '{"title": {title_json}, "body": {message_json}}',
        })
        with patch("requests.request") as request:
            assert send_notifications(config, report) == 1
        args, kwargs = request.call_args
        assert args[:2] == ("PUT", "https://hooks.example/x")
        body = json.loads(kwargs["data"].decode("utf-8"))
        assert body["title"] == "HarborBuddy: containers updated"
        assert "Failed: db" in body["body"]

    def test_delivery_failure_is_logged_not_raised(self, report):
        config = NotificationsConfig(ntfy={"url": "https://ntfy.sh/t"},
                                     webhook={"url": "https://hooks.example/x"})
        failing = Mock()
        failing.raise_for_status.side_effect = requests.HTTPError("502")
        with patch("requests.post", side_effect=requests.ConnectionError("refused")), \
             patch("requests.request", return_value=failing):
            assert send_notifications(config, report) == 0
