from prometheus_client import Counter
# Prometheus metrics definitions

# Metered actions rejected by the quota enforcer, by action and reason
quota_reject_total = Counter(
    "quota_reject_total",
    "Number of quota rejected requests",
    ["action", "reason"],
)

# Analysis collaborator failures (no quota consumed)
analysis_fail_total = Counter(
    "analysis_fail_total", "Total failed LLM analysis calls", ["action"]
)

# GPT timeout counter
# Incremented when call to OpenAI times out
gpt_timeout_total = Counter(
    "gpt_timeout_total", "Number of GPT timeouts"
)

# Stale paid plans corrected to FREE on read
plan_expired_total = Counter(
    "plan_expired_total", "Number of lazily expired paid plans"
)

# Webhook rejects (signature or payload)
webhook_forbidden_total = Counter(
    "webhook_forbidden_total", "Total rejected billing webhook requests"
)

# Billing events translated into entitlement transitions
billing_events_total = Counter(
    "billing_events_total", "Billing events handled", ["kind", "outcome"]
)

__all__ = [
    "quota_reject_total",
    "analysis_fail_total",
    "gpt_timeout_total",
    "plan_expired_total",
    "webhook_forbidden_total",
    "billing_events_total",
]
