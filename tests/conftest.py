"""Shared invoice texts and settings for the test suite."""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from invoice_pipeline.extraction.openai_provider import OpenAITextProvider
from invoice_pipeline.shared.config import Settings

MEDIS_INVOICE = """MEDIS (PTY) LTD
P O BOX 1515
SANLAMHOF
7532

Tax Invoice
Document No: IN326587
Date: 17/02/25

F-00042-47B    Met & Bunion Protector Sleeve Size L    4.00    x 1    300.33    25.0    R135.1    R900.99
F-00042-46B    Met & Bunion Protector Sleeve Size S    2.00    x 1    248.83    25.0    R55.99    R373.25
F-00033-03     Pure Gel Digital Cap 2cm Diameter Size L    1.00    x 6    247.56    25.0    R27.85    R185.67
P-PB           Podo Box Size L                          10.00    Each   76.35    0       R114.5   R763.50

Courier Cost for the delivery of the Podoboxes    R4.50    R30.00

THANK YOU FOR CHOOSING MEDIS
Banking details: Nedbank,
Account number: 1186041056,
Branch code: 118602

Time: 09:30:00    17/02/25    Total nett price: R2223.41
                              Discount: 0.00%
                              Amount excl tax: R1933.31
                              Tax: R290.10
                              TOTAL: R2223.41
"""

TRANSPHARM_INVOICE = """TRANSPHARM
123 Medical Street
Johannesburg

Invoice: TP-2025-001
Date: 15/02/25

Orthotics Kit Professional    2    R450.00    R900.00
Silicone Toe Separators      5    R35.00     R175.00
Anti-Fungal Cream 50ml       3    R89.50     R268.50

Subtotal: R1343.50
VAT: R201.53
Total: R1545.03
"""

ACME_INVOICE = """ACME MEDICAL SUPPLIES
12 Long Road
Cape Town

Invoice Number: AC-1001
Date: 03/03/25

Heel Cup Gel Large      2    120.00    240.00
Arch Support Insole     4    85.50     342.00

Subtotal: 582.00
VAT: 87.30
Total: 669.30
"""


@pytest.fixture
def settings() -> Settings:
    """Settings with retries that do not sleep."""
    return Settings(
        model_retry_backoff_seconds=0,
        text_model_max_retries=2,
        vision_enabled=False,
        gemini_api_key="",
    )


@pytest.fixture
def medis_text() -> str:
    return MEDIS_INVOICE


@pytest.fixture
def transpharm_text() -> str:
    return TRANSPHARM_INVOICE


@pytest.fixture
def acme_text() -> str:
    return ACME_INVOICE


def openai_auth_error() -> openai.AuthenticationError:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return openai.AuthenticationError(
        "Incorrect API key provided", response=httpx.Response(401, request=request), body=None
    )


@pytest.fixture
def rejected_openai(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> Iterator[OpenAITextProvider]:
    """OpenAI provider whose API key the server refuses."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-revoked")
    provider = OpenAITextProvider(settings)
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=openai_auth_error())
    with patch.object(provider, "_get_client", return_value=client):
        yield provider
