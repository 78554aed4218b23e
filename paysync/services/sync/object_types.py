from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from paysync.services.sync.errors import UnknownObjectTypeError

CATCHUP_OBJECT_TYPE = "events"


class StrategyKind(StrEnum):
    LIST = "list"
    PARENT = "parent"
    SKIP = "skip"
    CATCHUP = "catchup"


@dataclass(frozen=True)
class ObjectTypeConfig:
    name: str
    object_name: str
    list_path: str
    retrieve_path: str | None = None
    list_params: dict[str, Any] = field(default_factory=dict)
    supports_created_filter: bool = True
    strategy: StrategyKind = StrategyKind.LIST
    parent_type: str | None = None
    after_primary: bool = False
    event_types: tuple[str, ...] = ()
    hard_delete_events: tuple[str, ...] = ()


def _lifecycle_events(prefix: str, *suffixes: str) -> tuple[str, ...]:
    return tuple(f"{prefix}.{suffix}" for suffix in suffixes)


DEFAULT_OBJECT_TYPES: tuple[ObjectTypeConfig, ...] = (
    ObjectTypeConfig(
        name="products",
        object_name="product",
        list_path="/v1/products",
        retrieve_path="/v1/products/{id}",
        event_types=_lifecycle_events("product", "created", "updated", "deleted"),
        hard_delete_events=("product.deleted",),
    ),
    ObjectTypeConfig(
        name="prices",
        object_name="price",
        list_path="/v1/prices",
        retrieve_path="/v1/prices/{id}",
        event_types=_lifecycle_events("price", "created", "updated", "deleted"),
        hard_delete_events=("price.deleted",),
    ),
    ObjectTypeConfig(
        name="plans",
        object_name="plan",
        list_path="/v1/plans",
        retrieve_path="/v1/plans/{id}",
        event_types=_lifecycle_events("plan", "created", "updated", "deleted"),
        hard_delete_events=("plan.deleted",),
    ),
    ObjectTypeConfig(
        name="customers",
        object_name="customer",
        list_path="/v1/customers",
        retrieve_path="/v1/customers/{id}",
        event_types=_lifecycle_events("customer", "created", "updated", "deleted"),
        hard_delete_events=("customer.deleted",),
    ),
    ObjectTypeConfig(
        name="subscriptions",
        object_name="subscription",
        list_path="/v1/subscriptions",
        retrieve_path="/v1/subscriptions/{id}",
        list_params={"status": "all"},
        # customer.subscription.deleted is a cancellation, the row stays.
        event_types=_lifecycle_events(
            "customer.subscription",
            "created",
            "updated",
            "deleted",
            "paused",
            "resumed",
            "pending_update_applied",
            "pending_update_expired",
            "trial_will_end",
        ),
    ),
    ObjectTypeConfig(
        name="subscription_schedules",
        object_name="subscription_schedule",
        list_path="/v1/subscription_schedules",
        retrieve_path="/v1/subscription_schedules/{id}",
        event_types=_lifecycle_events(
            "subscription_schedule",
            "created",
            "updated",
            "canceled",
            "completed",
            "released",
            "aborted",
            "expiring",
        ),
    ),
    ObjectTypeConfig(
        name="invoices",
        object_name="invoice",
        list_path="/v1/invoices",
        retrieve_path="/v1/invoices/{id}",
        event_types=_lifecycle_events(
            "invoice",
            "created",
            "updated",
            "deleted",
            "finalized",
            "finalization_failed",
            "paid",
            "payment_action_required",
            "payment_failed",
            "payment_succeeded",
            "sent",
            "marked_uncollectible",
            "voided",
        ),
        hard_delete_events=("invoice.deleted",),
    ),
    ObjectTypeConfig(
        name="credit_notes",
        object_name="credit_note",
        list_path="/v1/credit_notes",
        retrieve_path="/v1/credit_notes/{id}",
        supports_created_filter=False,
        event_types=_lifecycle_events("credit_note", "created", "updated", "voided"),
    ),
    ObjectTypeConfig(
        name="charges",
        object_name="charge",
        list_path="/v1/charges",
        retrieve_path="/v1/charges/{id}",
        event_types=_lifecycle_events(
            "charge",
            "captured",
            "expired",
            "failed",
            "pending",
            "refunded",
            "succeeded",
            "updated",
        ),
    ),
    ObjectTypeConfig(
        name="payment_intents",
        object_name="payment_intent",
        list_path="/v1/payment_intents",
        retrieve_path="/v1/payment_intents/{id}",
        event_types=_lifecycle_events(
            "payment_intent",
            "created",
            "amount_capturable_updated",
            "canceled",
            "partially_funded",
            "payment_failed",
            "processing",
            "requires_action",
            "succeeded",
        ),
    ),
    ObjectTypeConfig(
        name="setup_intents",
        object_name="setup_intent",
        list_path="/v1/setup_intents",
        retrieve_path="/v1/setup_intents/{id}",
        event_types=_lifecycle_events(
            "setup_intent",
            "created",
            "canceled",
            "requires_action",
            "setup_failed",
            "succeeded",
        ),
    ),
    ObjectTypeConfig(
        name="refunds",
        object_name="refund",
        list_path="/v1/refunds",
        retrieve_path="/v1/refunds/{id}",
        event_types=_lifecycle_events("refund", "created", "updated", "failed"),
    ),
    ObjectTypeConfig(
        name="checkout_sessions",
        object_name="checkout.session",
        list_path="/v1/checkout/sessions",
        retrieve_path="/v1/checkout/sessions/{id}",
        event_types=_lifecycle_events(
            "checkout.session",
            "completed",
            "expired",
            "async_payment_succeeded",
            "async_payment_failed",
        ),
    ),
    ObjectTypeConfig(
        name="disputes",
        object_name="dispute",
        list_path="/v1/disputes",
        retrieve_path="/v1/disputes/{id}",
        event_types=_lifecycle_events(
            "charge.dispute",
            "created",
            "updated",
            "closed",
            "funds_reinstated",
            "funds_withdrawn",
        ),
    ),
    ObjectTypeConfig(
        name="early_fraud_warnings",
        object_name="radar.early_fraud_warning",
        list_path="/v1/radar/early_fraud_warnings",
        retrieve_path="/v1/radar/early_fraud_warnings/{id}",
        event_types=_lifecycle_events("radar.early_fraud_warning", "created", "updated"),
    ),
    ObjectTypeConfig(
        name="balance_transactions",
        object_name="balance_transaction",
        list_path="/v1/balance_transactions",
        retrieve_path="/v1/balance_transactions/{id}",
    ),
    ObjectTypeConfig(
        name="payment_methods",
        object_name="payment_method",
        list_path="/v1/customers/{parent_id}/payment_methods",
        retrieve_path="/v1/payment_methods/{id}",
        supports_created_filter=False,
        strategy=StrategyKind.PARENT,
        parent_type="customers",
        event_types=_lifecycle_events("payment_method", "attached", "detached", "updated", "automatically_updated"),
    ),
    ObjectTypeConfig(
        name="tax_ids",
        object_name="tax_id",
        list_path="/v1/customers/{parent_id}/tax_ids",
        retrieve_path="/v1/tax_ids/{id}",
        supports_created_filter=False,
        strategy=StrategyKind.PARENT,
        parent_type="customers",
        event_types=_lifecycle_events("customer.tax_id", "created", "updated", "deleted"),
        hard_delete_events=("customer.tax_id.deleted",),
    ),
    ObjectTypeConfig(
        name=CATCHUP_OBJECT_TYPE,
        object_name="event",
        list_path="/v1/events",
        retrieve_path="/v1/events/{id}",
        strategy=StrategyKind.CATCHUP,
        after_primary=True,
    ),
)


class ObjectTypeRegistry:
    """Ordered, closed set of object types one sweep walks through."""

    def __init__(self, configs: Iterable[ObjectTypeConfig], *, disabled: Iterable[str] = ()) -> None:
        disabled_names = set(disabled)
        ordered: dict[str, ObjectTypeConfig] = {}
        for config in configs:
            if config.name in ordered:
                raise ValueError(f"Duplicate object type {config.name!r}.")
            if config.name in disabled_names:
                config = replace(config, strategy=StrategyKind.SKIP)
            ordered[config.name] = config
        for config in ordered.values():
            if config.parent_type is not None and config.parent_type not in ordered:
                raise ValueError(f"Object type {config.name!r} depends on unknown parent {config.parent_type!r}.")
        self._configs = ordered
        self._by_object_name = {config.object_name: config for config in ordered.values()}

    def __contains__(self, name: object) -> bool:
        return name in self._configs

    def __iter__(self):
        return iter(self._configs.values())

    def names(self) -> list[str]:
        return list(self._configs)

    def get(self, name: str) -> ObjectTypeConfig:
        config = self._configs.get(name)
        if config is None:
            raise UnknownObjectTypeError(name)
        return config

    def for_object_name(self, object_name: str) -> ObjectTypeConfig | None:
        return self._by_object_name.get(object_name)

    def primary_names(self) -> list[str]:
        return [config.name for config in self._configs.values() if not config.after_primary]


def build_default_registry(*, disabled: Iterable[str] = ()) -> ObjectTypeRegistry:
    return ObjectTypeRegistry(DEFAULT_OBJECT_TYPES, disabled=disabled)
