import unittest
from datetime import date
from decimal import Decimal

from faturamento.contexts.billing.domain.status import InstallmentStatus
from faturamento.contexts.billing.domain.terms import (
    TERMS,
    as_date,
    compute_proposal_total,
    derive_installments,
    resolve_term,
)
from faturamento.errors import UnknownTermError


class InstallmentTermsTest(unittest.TestCase):
    def test_sum_of_installments_equals_total_for_every_term(self) -> None:
        totals = [0.01, 1.0, 100.0, 999.99, 1000.0, 1234.57, 98765.43]
        for term in TERMS:
            for total in totals:
                with self.subTest(term=term, total=total):
                    installments = derive_installments(total, term, 1.5, date(2026, 1, 10))
                    self.assertEqual(len(installments), len(TERMS[term]))
                    summed = sum(Decimal(str(item.face_value)) for item in installments)
                    self.assertEqual(summed, Decimal(str(total)).quantize(Decimal("0.01")))

    def test_last_installment_absorbs_rounding_remainder(self) -> None:
        installments = derive_installments(100.0, "90", 1.5, "2026-01-10")

        self.assertEqual([item.face_value for item in installments], [33.33, 33.33, 33.34])
        self.assertEqual([item.commission_value for item in installments], [0.5, 0.5, 0.5])
        self.assertTrue(all(item.status == InstallmentStatus.AWAITING_INVOICE for item in installments))
        self.assertEqual([item.number for item in installments], [1, 2, 3])
        self.assertTrue(all(item.count == 3 for item in installments))

    def test_commission_is_rounded_half_up_per_installment(self) -> None:
        installments = derive_installments(1000.0, "60", 2.5, "2026-01-10")

        self.assertEqual([item.face_value for item in installments], [500.0, 500.0])
        self.assertEqual([item.commission_value for item in installments], [12.5, 12.5])

        odd = derive_installments(10.01, "60", 1.5, "2026-01-10")
        self.assertEqual([item.face_value for item in odd], [5.0, 5.01])
        self.assertEqual([item.commission_value for item in odd], [0.08, 0.08])

    def test_due_dates_follow_term_offsets(self) -> None:
        installments = derive_installments(300.0, "60_75_90", 1.5, "10/01/2026")

        self.assertEqual(
            [item.due_date for item in installments],
            ["2026-03-11", "2026-03-26", "2026-04-10"],
        )

    def test_aliases_resolve_to_canonical_codes(self) -> None:
        self.assertEqual(resolve_term("30/60/90"), "90")
        self.assertEqual(resolve_term("30/60"), "60")
        self.assertEqual(resolve_term("60/90"), "60_90")
        self.assertEqual(resolve_term("60 direto"), "60_direto")
        self.assertEqual(resolve_term(" 60_90_120 "), "60_90_120")

    def test_unknown_term_raises_before_producing_installments(self) -> None:
        with self.assertRaises(UnknownTermError) as ctx:
            derive_installments(100.0, "45", 1.5, "2026-01-10")
        self.assertEqual(ctx.exception.http_status, 400)
        self.assertIn("45", ctx.exception.details or "")

    def test_proposal_total_applies_discount_to_items_and_adds_shipping(self) -> None:
        products_total, discount_value, total = compute_proposal_total(
            [
                {"quantity": 3, "unit_price": 19.99},
                {"quantity": 1, "unit_price": 0.005},
            ],
            shipping=15.5,
            discount_percent=10,
        )

        self.assertEqual(products_total, 59.98)
        self.assertEqual(discount_value, 6.0)
        self.assertEqual(total, 69.48)

    def test_as_date_accepts_iso_and_brazilian_formats(self) -> None:
        self.assertEqual(as_date("2026-02-03"), date(2026, 2, 3))
        self.assertEqual(as_date("03/02/2026"), date(2026, 2, 3))
        self.assertEqual(as_date("2026-02-03T10:00:00"), date(2026, 2, 3))
        with self.assertRaises(ValueError):
            as_date("")


if __name__ == "__main__":
    unittest.main()
