"""
Cameroon phone number helpers.
"""

import re
from typing import Optional

COUNTRY_CODE = "237"

# Mobile numbers are 9 digits starting with 6
_LOCAL_MOBILE = re.compile(r"^6\d{8}$")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a Cameroonian mobile number to E.164 (+2376XXXXXXXX).

    Accepts "6XXXXXXXX", "2376XXXXXXXX", "+237 6XX XX XX XX", "00237..." with
    spaces, dots or dashes.

    Returns:
        str: The normalized number, or None if it is not a valid mobile number.
    """
    if not raw:
        return None
    digits = re.sub(r"[\s.\-()]", "", str(raw))
    if digits.startswith("+"):
        digits = digits[1:]
    elif digits.startswith("00"):
        digits = digits[2:]
    if not digits.isdigit():
        return None
    if len(digits) == 12 and digits.startswith(COUNTRY_CODE):
        digits = digits[len(COUNTRY_CODE):]
    if not _LOCAL_MOBILE.match(digits):
        return None
    return f"+{COUNTRY_CODE}{digits}"
