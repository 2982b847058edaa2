import unittest
from decimal import Decimal

from gastosmart.currency_conversion import (
    InvalidRate,
    RateTable,
    UnsupportedCurrency,
    convert_amount,
    from_base,
    to_base,
)


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rates = RateTable({"USD": Decimal("40"), "UI": Decimal("6")})

    def test_base_currency_is_identity(self) -> None:
        self.assertEqual(to_base(Decimal("12.50"), "UYU", self.rates), Decimal("12.50"))
        self.assertEqual(from_base(Decimal("12.50"), "UYU", self.rates), Decimal("12.50"))

    def test_to_base_multiplies_by_rate(self) -> None:
        self.assertEqual(to_base(Decimal("10"), "USD", self.rates), Decimal("400"))
        self.assertEqual(to_base(Decimal("10"), "UI", self.rates), Decimal("60"))

    def test_from_base_divides_by_rate(self) -> None:
        self.assertEqual(from_base(Decimal("400"), "USD", self.rates), Decimal("10"))

    def test_conversion_pivots_through_base(self) -> None:
        amount = convert_amount(Decimal("3"), "USD", "UI", self.rates)

        self.assertEqual(amount, Decimal("20"))

    def test_same_currency_returns_original_amount(self) -> None:
        amount = convert_amount(Decimal("7.25"), "USD", "USD", self.rates)

        self.assertEqual(amount, Decimal("7.25"))

    def test_normalizes_currency_codes(self) -> None:
        amount = convert_amount("6", " usd ", "uyu", self.rates)

        self.assertEqual(amount, Decimal("240"))

    def test_accepts_plain_mapping(self) -> None:
        amount = to_base(Decimal("2"), "USD", {"USD": Decimal("42.5")})

        self.assertEqual(amount, Decimal("85.0"))

    def test_unsupported_currency_raises(self) -> None:
        with self.assertRaises(UnsupportedCurrency):
            convert_amount(Decimal("5"), "EUR", "UYU", self.rates)

    def test_missing_rate_in_mapping_raises(self) -> None:
        with self.assertRaises(UnsupportedCurrency):
            to_base(Decimal("5"), "UI", {"USD": Decimal("40")})


class RateTableTests(unittest.TestCase):
    def test_defaults_to_built_in_rates(self) -> None:
        rates = RateTable()

        self.assertEqual(rates.get_rate("USD"), Decimal("42.50"))
        self.assertEqual(rates.get_rate("UI"), Decimal("6.16"))
        self.assertEqual(rates.get_rate("UYU"), Decimal("1"))

    def test_set_rate_updates_shared_instance(self) -> None:
        rates = RateTable()
        consumer_view = rates

        rates.set_rate("USD", "41.2")

        self.assertEqual(consumer_view.get_rate("USD"), Decimal("41.2"))

    def test_rejects_non_positive_rates(self) -> None:
        rates = RateTable()
        for value in ("0", "-3", 0, Decimal("-0.01")):
            with self.subTest(value=value):
                with self.assertRaises(InvalidRate):
                    rates.set_rate("USD", value)
        self.assertEqual(rates.get_rate("USD"), Decimal("42.50"))

    def test_rejects_non_numeric_rates(self) -> None:
        rates = RateTable()
        for value in ("abc", "", "NaN", "Infinity"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidRate):
                    rates.set_rate("UI", value)

    def test_update_is_all_or_nothing(self) -> None:
        rates = RateTable()

        with self.assertRaises(InvalidRate):
            rates.update({"USD": "39", "UI": "0"})

        self.assertEqual(rates.get_rate("USD"), Decimal("42.50"))

    def test_base_currency_rate_cannot_be_set(self) -> None:
        with self.assertRaises(InvalidRate):
            RateTable().set_rate("UYU", "2")

    def test_snapshot_changes_with_rates(self) -> None:
        rates = RateTable()
        before = rates.snapshot()

        rates.set_rate("UI", "6.20")

        self.assertNotEqual(before, rates.snapshot())


if __name__ == "__main__":
    unittest.main()
