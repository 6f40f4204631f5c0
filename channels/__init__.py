"""Provider-facing channels. Voice telephony lives in ``channels.telephony``."""
