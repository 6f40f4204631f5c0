"""Tests for the Twilio REST client."""
from urllib.parse import parse_qs

import httpx
import pytest
import respx

from channels.telephony.twilio_client import TwilioClient
from config.settings import TelephonyConfig

ACCOUNT = "AC123"
BASE = f"https://api.twilio.com/2010-04-01/Accounts/{ACCOUNT}"


def client() -> TwilioClient:
    return TwilioClient(ACCOUNT, "token", "+15550009999")


class TestTwilioClient:
    def test_from_config_requires_credentials(self):
        assert TwilioClient.from_config(TelephonyConfig()) is None
        built = TwilioClient.from_config(TelephonyConfig(account_sid=ACCOUNT, auth_token="t"))
        assert built.base_url == BASE

    @pytest.mark.asyncio
    @respx.mock
    async def test_send_sms_posts_form(self):
        route = respx.post(f"{BASE}/Messages.json").mock(
            return_value=httpx.Response(201, json={"sid": "SM1", "status": "queued"}))
        twilio = client()
        result = await twilio.send_sms("+15551112222", "Thanks for calling")
        await twilio.close()

        assert result == {"sid": "SM1", "status": "queued", "to": "+15551112222"}
        form = parse_qs(route.calls.last.request.content.decode())
        assert form["From"] == ["+15550009999"]
        assert form["Body"] == ["Thanks for calling"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_end_call(self):
        route = respx.post(f"{BASE}/Calls/CA1.json").mock(
            return_value=httpx.Response(200, json={"sid": "CA1", "status": "completed"}))
        twilio = client()
        assert (await twilio.end_call("CA1"))["status"] == "completed"
        await twilio.close()
        assert parse_qs(route.calls.last.request.content.decode()) == {"Status": ["completed"]}

    @pytest.mark.asyncio
    @respx.mock
    async def test_error_status_raises(self):
        respx.post(f"{BASE}/Calls/CA2.json").mock(return_value=httpx.Response(404, json={}))
        twilio = client()
        with pytest.raises(httpx.HTTPStatusError):
            await twilio.end_call("CA2")
        await twilio.close()

    def test_parse_status_webhook(self):
        parsed = TwilioClient.parse_status_webhook({
            "CallSid": "CA9", "CallStatus": "No-Answer", "Direction": "outbound-api",
            "From": "+1", "To": "+2", "CallDuration": "17",
        })
        assert parsed["call_id"] == "CA9"
        assert parsed["status"] == "no-answer"
        assert parsed["direction"] == "outbound"
        assert parsed["duration"] == 17

    def test_parse_status_webhook_tolerates_bad_duration(self):
        parsed = TwilioClient.parse_status_webhook({"CallSid": "CA9", "CallDuration": "n/a"})
        assert parsed["duration"] == 0
        assert parsed["direction"] == "inbound"
