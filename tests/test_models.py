"""
Tests for the Ledger Engine models

Test strategy:
1. Unit tests for request models and their validators
2. Money helpers refuse binary floats
3. Audit events are built with the right classification
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from ledger_engine.exceptions import ValidationError
from ledger_engine.models.audit import AuditEventBuilder, AuditEventType, AuditSeverity
from ledger_engine.models.ledger import (
    LAST_DAY_OF_MONTH,
    AccountCreate,
    GoalCreate,
    RecurrenceFrequency,
    RecurringStatus,
    RecurringTemplateCreate,
    RecurringTemplateUpdate,
    TransactionPatch,
)
from ledger_engine.utils import quantize_money, to_decimal


class TestMoney:
    """Tests for Decimal conversion helpers."""

    def test_strings_and_ints_accepted(self):
        assert to_decimal("12.30") == Decimal("12.30")
        assert to_decimal(7) == Decimal("7")

    def test_float_rejected(self):
        """Test that binary floats never become money."""
        with pytest.raises(ValidationError):
            to_decimal(0.1)

    def test_bool_rejected(self):
        with pytest.raises(ValidationError):
            to_decimal(True)

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity"])
    def test_garbage_rejected(self, value):
        with pytest.raises(ValidationError):
            to_decimal(value)

    def test_half_up_rounding(self):
        assert quantize_money("2.345") == Decimal("2.35")
        assert quantize_money("-2.345") == Decimal("-2.35")
        assert quantize_money("2.344") == Decimal("2.34")


class TestAccountCreate:

    def test_defaults(self):
        request = AccountCreate(name="  Checking  ")
        assert request.name == "Checking"
        assert request.opening_balance == Decimal("0")
        assert request.is_manual

    def test_currency_normalized(self):
        assert AccountCreate(name="Wallet", currency="eur").currency == "EUR"

    def test_opening_balance_needs_category(self):
        with pytest.raises(PydanticValidationError):
            AccountCreate(name="Checking", opening_balance=Decimal("100"))

    def test_opening_balance_with_category(self):
        request = AccountCreate(
            name="Checking",
            opening_balance=Decimal("100"),
            opening_balance_category_id=uuid4(),
        )
        assert request.opening_balance == Decimal("100")


class TestRecurringModels:

    def _create(self, **overrides):
        fields = {
            "account_id": uuid4(),
            "amount": Decimal("-9.99"),
            "payee": "Streaming",
            "category_id": uuid4(),
            "frequency": RecurrenceFrequency.MONTHLY,
            "start_date": date(2024, 1, 1),
        }
        fields.update(overrides)
        return RecurringTemplateCreate(**fields)

    def test_amount_quantized(self):
        assert self._create(amount=Decimal("-9.995")).amount == Decimal("-10.00")

    def test_amount_rounding_to_zero_rejected(self):
        with pytest.raises(PydanticValidationError):
            self._create(amount=Decimal("0.004"))

    @pytest.mark.parametrize("day", [0, 32, -2])
    def test_invalid_day_of_month(self, day):
        with pytest.raises(PydanticValidationError):
            self._create(day_of_month=day)

    def test_last_day_sentinel_accepted(self):
        assert self._create(day_of_month=LAST_DAY_OF_MONTH).day_of_month == -1

    def test_day_of_week_range(self):
        with pytest.raises(PydanticValidationError):
            self._create(day_of_week=7)

    def test_update_tracks_schedule_changes(self):
        assert RecurringTemplateUpdate(interval=2).changes_schedule
        assert not RecurringTemplateUpdate(payee="Other").changes_schedule


class TestRecurringStatus:
    """Tests for the template state machine."""

    def test_active_transitions(self):
        assert RecurringStatus.ACTIVE.can_transition_to(RecurringStatus.PAUSED)
        assert RecurringStatus.ACTIVE.can_transition_to(RecurringStatus.COMPLETED)
        assert RecurringStatus.ACTIVE.can_transition_to(RecurringStatus.CANCELLED)

    def test_paused_cannot_complete(self):
        assert RecurringStatus.PAUSED.can_transition_to(RecurringStatus.ACTIVE)
        assert not RecurringStatus.PAUSED.can_transition_to(RecurringStatus.COMPLETED)

    def test_terminal_states(self):
        assert RecurringStatus.COMPLETED.is_terminal
        assert RecurringStatus.CANCELLED.is_terminal
        assert not RecurringStatus.ACTIVE.is_terminal
        assert not RecurringStatus.CANCELLED.can_transition_to(RecurringStatus.ACTIVE)


class TestPatches:

    def test_only_set_fields_are_tracked(self):
        patch = TransactionPatch(notes=None, amount=Decimal("5"))
        assert patch.model_fields_set == {"notes", "amount"}

    def test_blank_payee_rejected(self):
        with pytest.raises(PydanticValidationError):
            TransactionPatch(payee="   ")

    def test_goal_target_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            GoalCreate(name="Car", target_amount=Decimal("0"))


class TestAuditEventBuilder:

    def test_transaction_created(self):
        user_id, transaction_id, account_id = uuid4(), uuid4(), uuid4()
        event = AuditEventBuilder.transaction_created(
            user_id, transaction_id, account_id, Decimal("-20.00"), is_manual=False
        )

        assert event.event_type == AuditEventType.TRANSACTION_CREATED
        assert event.severity == AuditSeverity.INFO
        assert event.entity_id == transaction_id
        assert event.details == {
            "account_id": str(account_id),
            "amount": "-20.00",
            "is_manual": False,
        }

    def test_conversion_failed_is_an_error(self):
        event = AuditEventBuilder.conversion_failed(
            uuid4(), uuid4(), "external_service_unavailable", "rate outage"
        )
        assert event.severity == AuditSeverity.ERROR
        assert event.entity_type == "conversion_run"
        assert event.error_message == "rate outage"

    def test_log_dict_is_serializable(self):
        event = AuditEventBuilder.budget_alerts_reset(uuid4(), 2)
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "budget_alerts_reset"
        assert log_dict["details"] == {"reset_count": 2}
        assert isinstance(log_dict["entity_id"], str)
