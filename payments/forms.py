from decimal import ROUND_HALF_UP, Decimal

from django import forms
from django.core.validators import URLValidator

from .exceptions import InvalidRequest

# Order.amount is DecimalField(max_digits=12, decimal_places=2)
MAX_AMOUNT = Decimal("10000000000")


class StudentInfoForm(forms.Form):
    name = forms.CharField(max_length=128)
    id = forms.CharField(max_length=64)
    email = forms.EmailField()


class CreatePaymentForm(forms.Form):
    school_id = forms.CharField(max_length=64)
    # any numeric amount is accepted and rounded to cents in clean_amount
    amount = forms.DecimalField()
    # CharField rather than URLField: URLField would prepend a scheme to bare hosts
    callback_url = forms.CharField(
        max_length=512,
        validators=[URLValidator(schemes=["http", "https"], message="Valid callback URL is required")],
    )
    gateway_name = forms.CharField(max_length=64, required=False)
    trustee_id = forms.CharField(max_length=64, required=False)

    def clean_amount(self):
        amount = self.cleaned_data["amount"]
        if amount >= MAX_AMOUNT:
            raise forms.ValidationError("Amount is too large")
        amount = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        if amount <= Decimal("0"):
            raise forms.ValidationError("Amount must be greater than 0")
        return amount


def validate_create_payment(payload) -> dict:
    """Validate a create-payment body; raise :class:`InvalidRequest` on any error.

    Returns the cleaned data with ``student_info`` as a nested dict.
    """
    if not isinstance(payload, dict):
        raise InvalidRequest("Invalid JSON body")

    student_raw = payload.get("student_info")
    form = CreatePaymentForm(payload)
    student_form = StudentInfoForm(student_raw if isinstance(student_raw, dict) else {})

    errors = {}
    if not form.is_valid():
        errors.update({k: list(v) for k, v in form.errors.items()})
    if not student_form.is_valid():
        errors.update({f"student_info.{k}": list(v) for k, v in student_form.errors.items()})
    if errors:
        raise InvalidRequest("Validation failed", errors=errors)

    cleaned = dict(form.cleaned_data)
    cleaned["student_info"] = dict(student_form.cleaned_data)
    return cleaned
