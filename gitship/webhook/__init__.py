from gitship.webhook.receiver import (
    WebhookReceiver,
    compute_signature,
    normalize_url,
    selector_matches_ref,
)

__all__ = [
    "WebhookReceiver",
    "compute_signature",
    "normalize_url",
    "selector_matches_ref",
]
