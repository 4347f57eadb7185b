"""Prometheus metrics for contract transitions, signing outcomes and collaborator health"""

from prometheus_client import Counter, Histogram

# Lifecycle metrics
contract_transition_counter = Counter(
    "engagement_contract_transitions_total",
    "Committed contract status transitions",
    ["from_status", "to_status"],
)

signature_attempt_counter = Counter(
    "engagement_signature_attempts_total",
    "Signing attempts recorded in the audit ledger",
    ["role", "outcome"],  # verified | failed
)

activation_counter = Counter(
    "engagement_activations_total",
    "Contracts that became fully signed and active",
)

# Schedule metrics
overdue_installments_counter = Counter(
    "engagement_overdue_installments_total",
    "Installments flagged overdue by the sweep",
)

payment_counter = Counter(
    "engagement_installment_payments_total",
    "Installment payments recorded",
    ["payment_method"],  # FULL_PAYMENT | INSTALLMENTS
)

# Webhook metrics
webhook_latency_histogram = Histogram(
    "webhook_latency_seconds",
    "Engagement activation webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

webhook_failure_counter = Counter(
    "webhook_failures_total",
    "Failed engagement webhook deliveries",
)

collaborator_failure_counter = Counter(
    "engagement_collaborator_failures_total",
    "Collaborator failures swallowed after a committed transition",
    ["collaborator"],  # engagement | notification
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_transition(from_status, to_status) -> None:
    """Record a transition; accepts enum members or raw strings"""
    contract_transition_counter.labels(
        from_status=getattr(from_status, "value", from_status) or "NONE",
        to_status=getattr(to_status, "value", to_status),
    ).inc()
