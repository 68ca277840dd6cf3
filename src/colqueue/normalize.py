from __future__ import annotations

import re

from .utils import slugify


_WHITESPACE = re.compile(r"\s+")

CITY_ALIASES = {
    "nyc": "new-york-city",
    "new york": "new-york-city",
    "new york city": "new-york-city",
    "la": "los-angeles",
    "los angeles": "los-angeles",
    "sf": "san-francisco",
    "san francisco": "san-francisco",
    "dc": "washington-dc",
    "washington dc": "washington-dc",
    "washington d.c.": "washington-dc",
}

COUNTRY_CODES = {
    "united states": "US",
    "usa": "US",
    "us": "US",
    "united kingdom": "GB",
    "uk": "GB",
    "england": "GB",
    "germany": "DE",
    "france": "FR",
    "italy": "IT",
    "spain": "ES",
    "canada": "CA",
    "australia": "AU",
    "japan": "JP",
    "china": "CN",
    "india": "IN",
    "brazil": "BR",
    "mexico": "MX",
    "netherlands": "NL",
    "belgium": "BE",
    "switzerland": "CH",
    "austria": "AT",
    "sweden": "SE",
    "norway": "NO",
    "denmark": "DK",
    "poland": "PL",
    "portugal": "PT",
    "greece": "GR",
    "ireland": "IE",
    "finland": "FI",
    "luxembourg": "LU",
    "new zealand": "NZ",
    "south korea": "KR",
    "singapore": "SG",
    "hong kong": "HK",
    "united arab emirates": "AE",
    "uae": "AE",
}

LOCAL_CURRENCIES = {
    "GB": "GBP",
    "IE": "EUR",
    "FR": "EUR",
    "DE": "EUR",
    "IT": "EUR",
    "ES": "EUR",
    "PT": "EUR",
    "NL": "EUR",
    "BE": "EUR",
    "AT": "EUR",
    "GR": "EUR",
    "FI": "EUR",
    "LU": "EUR",
    "US": "USD",
    "CA": "CAD",
    "AU": "AUD",
    "NZ": "NZD",
    "JP": "JPY",
    "CN": "CNY",
    "IN": "INR",
    "BR": "BRL",
    "MX": "MXN",
    "CH": "CHF",
    "SE": "SEK",
    "NO": "NOK",
    "DK": "DKK",
    "PL": "PLN",
    "KR": "KRW",
    "SG": "SGD",
    "HK": "HKD",
    "AE": "AED",
}


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value).strip().lower()


def normalize_city_name(city: str | None) -> str:
    lowered = normalize_text(city)
    if not lowered:
        return ""
    if lowered in CITY_ALIASES:
        return CITY_ALIASES[lowered]
    return slugify(lowered)


def normalize_country_code(country: str | None) -> str:
    lowered = normalize_text(country)
    if not lowered:
        return ""
    if lowered in COUNTRY_CODES:
        return COUNTRY_CODES[lowered]
    return lowered.upper()[:2]


def infer_local_currency(country_code: str | None) -> str | None:
    if not country_code:
        return None
    return LOCAL_CURRENCIES.get(country_code.upper())
