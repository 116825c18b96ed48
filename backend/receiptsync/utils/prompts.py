"""Default prompt used for receipt extraction.

Keeping the prompt in one place makes it easier to iterate on its
content without touching the extraction service.
"""

from __future__ import annotations

from textwrap import dedent


def get_default_extraction_prompt() -> str:
    """Return the instructions sent alongside the receipt image.

    Field names match :class:`receiptsync.models.schemas.ExtractedReceipt`.
    """
    return dedent(
        """
        You are an assistant specialised in parsing purchase receipts. You
        will be given an image of a receipt and must extract:

          vendor: merchant or store name
          amount: total amount paid as a number (12.99, not "$12.99")
          currency: 3-letter ISO currency code (USD, EUR, GBP, ...)
          date: purchase date in YYYY-MM-DD format
          category: one of FOOD, TRAVEL, OFFICE, SOFTWARE, UTILITIES,
                    ENTERTAINMENT, HEALTHCARE, SHOPPING, SERVICES, OTHER
          tax_amount, subtotal: numbers if printed
          payment_method: Cash, Credit Card, Debit, ...
          receipt_number: receipt or transaction number
          notes: anything else worth keeping, briefly
          field_confidence: confidence between 0.0 and 1.0 for vendor,
                            amount, date, currency and category based on
                            how legible each value is

        Category guidelines:
        - FOOD: restaurants, groceries, cafes, food delivery
        - TRAVEL: airlines, hotels, car rentals, fuel, rideshare
        - OFFICE: office supplies, printing, shipping
        - SOFTWARE: software subscriptions, SaaS, digital services
        - UTILITIES: phone, internet, electricity, water
        - ENTERTAINMENT: cinema, concerts, streaming, games
        - HEALTHCARE: pharmacy, medical services
        - SHOPPING: general retail, clothing, electronics
        - SERVICES: professional services, repairs, maintenance
        - OTHER: anything else

        Set a field to null when it is not visible or unclear. Handle
        faded, partial or non-English receipts by extracting what is
        visible. Return ONLY JSON matching the schema.
        """
    ).strip()
