import pytest

from utils.validators import normalize_phone


@pytest.mark.parametrize(
    "raw",
    ["0712345678", "254712345678", "+254 712 345 678", "712345678", "254-712-345-678"],
)
def test_local_and_international_forms_normalize_to_one_value(raw):
    assert normalize_phone(raw) == "254712345678"


def test_airtel_style_one_prefix_is_accepted():
    assert normalize_phone("0112345678") == "254112345678"


@pytest.mark.parametrize("raw", ["", None, "0812345678", "07123", "2547123456789", "abc"])
def test_numbers_outside_the_numbering_plan_are_rejected(raw):
    with pytest.raises(ValueError):
        normalize_phone(raw)
