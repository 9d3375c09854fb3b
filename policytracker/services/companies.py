from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterable


UNKNOWN_COMPANY = "Unknown"

# Canonical insurer names and the upper-cased spellings agents type for them.
COMPANY_MAPPINGS: dict[str, tuple[str, ...]] = {
    "Cholamandalam": (
        "CHOLA",
        "CHOLA MS",
        "CHOLA MS GENERAL INSURANCE",
        "CHOLAMANDALAM",
        "CHOLAMANDALAM MS",
        "CHOLAMANDALAM GENERAL INSURANCE",
        "CHOLAMANDALAM MS GENERAL INSURANCE COMPANY LTD",
        "CHOLAMANDALAM MS GENERAL INSURANCE CO LTD",
    ),
    "National": (
        "NATIONAL",
        "NATIONAL INS",
        "NATIONAL INSURANCE",
        "NATIONAL INSURANCE COMPANY",
        "NATIONAL INSURANCE COMPANY LTD",
        "NIC",
        "NATIONAL INSURANCE CO",
    ),
    "Iffco Tokio": (
        "IFFCO",
        "IFFCO TOKIO",
        "IFFCO TOKIO GENERAL INSURANCE",
        "IFFCO TOKIO GENERAL",
        "IFFCO TOKIO GENERAL INSURANCE COMPANY",
        "IFFCO TOKIO GIC",
    ),
    "Bajaj Allianz": ("BAJAJ", "BAJAJ ALLIANZ", "BAJAJ ALLIANZ GENERAL INSURANCE", "BAJAJ ALLIANZ GIC"),
    "HDFC Ergo": ("HDFC", "HDFC ERGO", "HDFC ERGO GENERAL INSURANCE"),
    "ICICI Lombard": ("ICICI", "ICICI LOMBARD", "ICICI LOMBARD GENERAL INSURANCE", "ICICI LOMBARD GIC"),
    "New India Assurance": ("NEW INDIA", "NIA", "NEW INDIA ASSURANCE", "NEW INDIA ASSURANCE CO"),
    "Oriental Insurance": ("ORIENTAL", "OIC", "ORIENTAL INSURANCE", "ORIENTAL INSURANCE CO"),
    "United India": ("UII", "UNITED INDIA", "UNITED INDIA INSURANCE", "UNITED INDIA INSURANCE CO"),
    "Tata AIG": ("TATA", "TATA AIG", "TATA AIG GENERAL INSURANCE"),
    "Reliance General": ("RELIANCE", "RELIANCE GENERAL", "RELIANCE GENERAL INSURANCE"),
    "Royal Sundaram": ("ROYAL", "ROYAL SUNDARAM", "ROYAL SUNDARAM GENERAL INSURANCE"),
    "SBI General": ("SBI", "SBI GENERAL", "SBI GENERAL INSURANCE"),
    "Future Generali": ("FUTURE", "FUTURE GENERALI", "FUTURE GENERALI INDIA INSURANCE"),
    "Digit Insurance": ("DIGIT", "GO DIGIT", "DIGIT GENERAL INSURANCE"),
    "Acko": ("ACKO", "ACKO GENERAL INSURANCE"),
    "Kotak Mahindra": ("KOTAK", "KOTAK GENERAL INSURANCE"),
    "Liberty General": ("LIBERTY", "LIBERTY VIDEOCON", "LIBERTY GENERAL"),
    "Magma HDI": ("MAGMA", "HDI GLOBAL", "MAGMA HDI"),
    "Shriram General": ("SHRIRAM", "SHRIRAM GENERAL", "SHRIRAM GENERAL INSURANCE"),
    "Aditya Birla Health": (
        "ADITYA BIRLA",
        "ADITYA BIRLA HEALTH",
        "ADITYA BIRLA CAPITAL HEALTH",
        "ADITYA BIRLA HEALTH INSURANCE",
        "ADITYA BIRLA CAPITAL HEALTH INSURANCE",
        "ADITYA BIRLA HEALTH INSURANCE CO",
        "ADITYA BIRLA HEALTH INSURANCE COMPANY",
        "ADITYA BIRLA CAPITAL HEALTH INSURANCE CO",
        "ADITYA BIRLA CAPITAL",
        "ABSLI",
        "ABHI",
    ),
    "Max Life": ("MAX", "MAX LIFE", "MAX LIFE INSURANCE"),
    "LIC": ("LIC", "LIFE INSURANCE CORPORATION", "LIC OF INDIA", "LIFE INSURANCE CORPORATION OF INDIA"),
    "Star Health": ("STAR", "STAR HEALTH", "STAR HEALTH INSURANCE", "STAR HEALTH AND ALLIED INSURANCE"),
    "Care Health": ("CARE", "CARE HEALTH", "CARE HEALTH INSURANCE", "RELIGARE HEALTH"),
    "Niva Bupa": ("NIVA", "NIVA BUPA", "NIVA BUPA HEALTH", "MAX BUPA"),
    "HDFC Life": ("HDFC LIFE", "HDFC LIFE INSURANCE", "HDFC STANDARD LIFE"),
    "ICICI Prudential": ("ICICI PRU", "ICICI PRUDENTIAL", "ICICI PRUDENTIAL LIFE"),
    "SBI Life": ("SBI LIFE", "SBI LIFE INSURANCE"),
    "Bajaj Allianz Life": ("BAJAJ LIFE", "BAJAJ ALLIANZ LIFE", "BAJAJ ALLIANZ LIFE INSURANCE"),
}

_WHITESPACE_RE = re.compile(r"\s+")
_PUNCTUATION_RE = re.compile(r"[.,]")


def _build_lookup() -> tuple[dict[str, str], list[tuple[str, str]]]:
    exact: dict[str, str] = {}
    variants: list[tuple[str, str]] = []
    for canonical, spellings in COMPANY_MAPPINGS.items():
        for spelling in (canonical.upper(), *spellings):
            exact.setdefault(spelling, canonical)
            variants.append((spelling, canonical))
    # Longest spelling first so "HDFC LIFE" wins over "HDFC".
    variants.sort(key=lambda item: len(item[0]), reverse=True)
    return exact, variants


_EXACT, _VARIANTS = _build_lookup()


def _clean(name: str) -> str:
    cleaned = _PUNCTUATION_RE.sub(" ", name.strip().upper())
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def _title_case(name: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.strip().split(" ") if word)


def normalize_company_name(company_name: str | None) -> str:
    """Map a free-text insurer name to its canonical form.

    Exact spellings win; otherwise the longest known spelling appearing as a
    whole-word run inside the input decides. Unmatched names are title-cased.
    """
    if not company_name or not company_name.strip():
        return UNKNOWN_COMPANY
    cleaned = _clean(company_name)
    canonical = _EXACT.get(cleaned)
    if canonical is not None:
        return canonical
    padded = f" {cleaned} "
    for spelling, canonical in _VARIANTS:
        if f" {spelling} " in padded:
            return canonical
    return _title_case(_WHITESPACE_RE.sub(" ", company_name))


@dataclass
class CompanyTotals:
    count: int = 0
    premium: float = 0.0
    commission: float = 0.0


def aggregate_by_company(
    rows: Iterable[tuple[str | None, float | None, float | None]],
) -> dict[str, CompanyTotals]:
    # Rows are (company_name, net_premium, commission_percentage).
    totals: dict[str, CompanyTotals] = {}
    for company_name, premium, percentage in rows:
        name = normalize_company_name(company_name)
        entry = totals.setdefault(name, CompanyTotals())
        premium_value = float(premium or 0)
        entry.count += 1
        entry.premium += premium_value
        entry.commission += premium_value * float(percentage or 0) / 100
    return totals
