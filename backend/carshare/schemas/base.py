"""
Shared field types for API responses.
"""

from decimal import Decimal
from typing import Annotated

from pydantic import PlainSerializer

# Amounts stay Decimal in Python and go out as JSON numbers in major units
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
