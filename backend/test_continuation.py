import pytest

from services.continuation import looks_like_continuation


@pytest.mark.parametrize("text", [
    "SW-PAYMENT REF 8812",
    "MCBKCWCU CURACAO",
    "12 Kaya Grandi Willemstad",
    "Kralendijk Bonaire",
    "payment via MOBILEWEB",
    "Miami FL, United States",
    "London, United Kingdom",
])
def test_looks_like_continuation(text):
    assert looks_like_continuation(text)


@pytest.mark.parametrize("text", [
    "",
    None,
    "coffee shop",
    "Salary",
    "Cash withdrawal",
    "Interest credited",
    "4.50 fee",
])
def test_regular_descriptions(text):
    assert not looks_like_continuation(text)
