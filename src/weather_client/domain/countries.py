from __future__ import annotations

SUPPORTED_COUNTRIES: dict[str, str] = {
    "IN": "India",
    "US": "United States",
    "GB": "United Kingdom",
    "CA": "Canada",
    "AU": "Australia",
    "DE": "Germany",
    "FR": "France",
    "IT": "Italy",
    "JP": "Japan",
    "CN": "China",
    "RU": "Russia",
    "BR": "Brazil",
    "ZA": "South Africa",
    "MX": "Mexico",
    "ES": "Spain",
    "KR": "South Korea",
    "SG": "Singapore",
    "AE": "United Arab Emirates",
    "SA": "Saudi Arabia",
    "NZ": "New Zealand",
}


def is_supported_country(code: str) -> bool:
    return code.strip().upper() in SUPPORTED_COUNTRIES


def country_display_name(code: str) -> str:
    """Return the display name for a country code, or the code itself when unlisted."""
    return SUPPORTED_COUNTRIES.get(code.strip().upper(), code)
