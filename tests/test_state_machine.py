import pytest
from app.services.state_machine import (
    STEPS_ORDER,
    InvalidTransitionError,
    OrderStep,
    advance,
    can_transition,
    is_valid_phone,
    next_step,
    transition,
)


class TestValidTransitions:
    def test_date_to_time(self):
        result = transition(OrderStep.DATE, OrderStep.TIME)
        assert result == OrderStep.TIME

    def test_time_to_exact_time(self):
        result = transition(OrderStep.TIME, OrderStep.EXACT_TIME)
        assert result == OrderStep.EXACT_TIME

    def test_exact_time_to_address(self):
        result = transition(OrderStep.EXACT_TIME, OrderStep.ADDRESS)
        assert result == OrderStep.ADDRESS

    def test_recipient_phone_to_confirm(self):
        result = transition(OrderStep.RECIPIENT_PHONE, OrderStep.CONFIRM)
        assert result == OrderStep.CONFIRM


class TestInvalidTransitions:
    def test_skip_ahead(self):
        with pytest.raises(InvalidTransitionError):
            transition(OrderStep.DATE, OrderStep.ADDRESS)

    def test_backwards(self):
        with pytest.raises(InvalidTransitionError):
            transition(OrderStep.ADDRESS, OrderStep.TIME)

    def test_same_step(self):
        with pytest.raises(InvalidTransitionError):
            transition(OrderStep.DATE, OrderStep.DATE)

    def test_confirm_is_terminal(self):
        with pytest.raises(InvalidTransitionError):
            transition(OrderStep.CONFIRM, OrderStep.DATE)

    def test_error_message(self):
        with pytest.raises(InvalidTransitionError, match="date -> confirm"):
            transition(OrderStep.DATE, OrderStep.CONFIRM)


class TestLinearOrder:
    def test_advance_follows_steps_order(self):
        step = OrderStep.DATE
        for expected in STEPS_ORDER[1:]:
            step = advance(step)
            assert step == expected

    def test_exact_time_is_not_in_linear_order(self):
        assert OrderStep.EXACT_TIME not in STEPS_ORDER

    def test_exact_time_continues_to_address(self):
        assert next_step(OrderStep.EXACT_TIME) == OrderStep.ADDRESS

    def test_confirm_stays(self):
        assert next_step(OrderStep.CONFIRM) is None
        assert advance(OrderStep.CONFIRM) == OrderStep.CONFIRM


class TestCanTransition:
    def test_valid_returns_true(self):
        assert can_transition(OrderStep.TIME, OrderStep.ADDRESS) is True

    def test_invalid_returns_false(self):
        assert can_transition(OrderStep.TIME, OrderStep.CARD_TEXT) is False


class TestPhoneValidation:
    @pytest.mark.parametrize("phone", ["9991234567", "+7 (999) 123-45-67", "8-999-123-45-67"])
    def test_valid(self, phone):
        assert is_valid_phone(phone) is True

    @pytest.mark.parametrize("phone", ["", "12345", "+7 999 12", "телефон"])
    def test_invalid(self, phone):
        assert is_valid_phone(phone) is False
