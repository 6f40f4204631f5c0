"""
Twilio boundary: TwiML rendering, webhook signature checks and the REST
client used for hangups and post-call SMS.

Usage:
    from channels.telephony import render_twiml
    xml = render_twiml(instruction, base_url=settings.telephony.public_base_url)
"""
from channels.telephony.signature import canonical_url, verify_twilio_signature
from channels.telephony.twilio_client import TwilioClient
from channels.telephony.twiml import render_empty, render_twiml

__all__ = [
    "TwilioClient", "render_twiml", "render_empty",
    "verify_twilio_signature", "canonical_url",
]
