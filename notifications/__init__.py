"""Best-effort side effects of finished calls: lead capture and post-call actions."""
from notifications.leads import LeadCapture
from notifications.post_call import PostCallDispatcher

__all__ = ["LeadCapture", "PostCallDispatcher"]
