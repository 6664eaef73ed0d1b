"""
Unit tests for the provider HTTP client.

Tests request shaping and error mapping with a mocked requests session.
"""

from datetime import datetime
from unittest.mock import Mock

import pytest
import requests

from usage_meter.provider import HttpTelephonyProvider, ProviderError


def _response(payload):
    response = Mock()
    response.json.return_value = payload
    return response


class TestHttpTelephonyProvider:
    """Test HttpTelephonyProvider wrapper."""

    def setup_method(self):
        self.session = Mock(spec=requests.Session)
        self.provider = HttpTelephonyProvider(
            base_url="https://api.example.com/platform_api/",
            account_id="acc-1",
            api_key="secret",
            timeout=3.0,
            session=self.session,
        )

    def test_init_missing_base_url(self):
        with pytest.raises(ValueError, match="base_url is required"):
            HttpTelephonyProvider(base_url="", account_id="a", api_key="k")

    def test_init_missing_credentials(self):
        with pytest.raises(ValueError, match="api_key"):
            HttpTelephonyProvider(base_url="https://x", account_id="a", api_key="")

    def test_terminate_campaign(self):
        self.session.post.return_value = _response({"result": 1})

        assert self.provider.terminate_campaign("list-7") is True

        self.session.post.assert_called_once_with(
            "https://api.example.com/platform_api/StopCallListProcessing",
            params={"api_key": "secret", "account_id": "acc-1", "list_id": "list-7"},
            timeout=3.0,
        )

    def test_terminate_session(self):
        self.session.post.return_value = _response({"result": 0})
        assert self.provider.terminate_session("s-1") is False

    def test_find_active_sessions(self):
        self.session.post.return_value = _response({"result": [
            {"session_id": 11, "finished": False, "start_date": "2024-05-01T11:50:00Z"},
            {"session_id": 12, "finished": True},
        ]})

        sessions = self.provider.find_active_sessions("74951234567", datetime(2024, 5, 1, 11, 30))

        assert [s.session_id for s in sessions] == ["11", "12"]
        assert sessions[0].finished is False
        assert sessions[0].started_at == datetime(2024, 5, 1, 11, 50)
        params = self.session.post.call_args.kwargs["params"]
        assert params["phone_number"] == "74951234567"
        assert params["from_date"] == "2024-05-01T11:30:00"

    def test_find_active_campaigns(self):
        self.session.post.return_value = _response({"result": [
            {"list_id": 5, "start_at": "2024-05-01T10:00:00"},
        ]})
        campaigns = self.provider.find_active_campaigns("74951234567", datetime(2024, 4, 30))
        assert campaigns[0].list_id == "5"
        assert campaigns[0].number == "74951234567"

    def test_send_message(self):
        self.session.post.return_value = _response(
            {"result": 1, "message_id": 99, "fragments_count": 2}
        )
        sent = self.provider.send_message("74951234567", "79990000000", "hello")
        assert sent.message_id == "99"
        assert sent.segments == 2
        params = self.session.post.call_args.kwargs["params"]
        assert params["sms_body"] == "hello"

    def test_error_payload_raises(self):
        self.session.post.return_value = _response(
            {"error": {"msg": "Invalid destination", "code": 100}}
        )
        with pytest.raises(ProviderError, match="Invalid destination"):
            self.provider.send_message("1", "2", "hi")

    def test_rejected_message_raises(self):
        self.session.post.return_value = _response({"result": 0})
        with pytest.raises(ProviderError):
            self.provider.send_message("1", "2", "hi")

    def test_timeout_maps_to_provider_error(self):
        self.session.post.side_effect = requests.Timeout("read timed out")
        with pytest.raises(ProviderError, match="TerminateSession request failed"):
            self.provider.terminate_session("s-1")

    def test_invalid_json_maps_to_provider_error(self):
        response = Mock()
        response.json.side_effect = ValueError("no json")
        self.session.post.return_value = response
        with pytest.raises(ProviderError, match="invalid JSON"):
            self.provider.terminate_campaign("1")
