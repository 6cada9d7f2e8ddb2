"""
Standard maintenance dosing reference and next-step policy.

The engine never sweeps dosing parameters: for a stable patient it proposes
exactly one next step down from the current regimen.

    reduction level 0  -> 25% reduction (interval x 4/3)
    reduction level 25 -> 50% reduction (interval x 2)
    reduction level 50 -> nothing further

Injectables step by extending the interval (INTERVAL_EXTENSION). Daily oral
agents step down to the next marketed tablet strength at the same frequency
(DOSE_REDUCTION); with no lower strength available there is no step.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import math
import re

from models import CandidateType


@dataclass(frozen=True)
class StandardDosing:
    interval: int
    unit: str                       # "week" | "day"
    dose_mg: Optional[float] = None  # reference daily dose for oral agents
    strengths_mg: Tuple[float, ...] = ()  # marketed tablet strengths


@dataclass(frozen=True)
class DosingStep:
    type: CandidateType
    new_dose: Optional[str]
    new_frequency: Optional[str]
    regimen_ratio: float            # new annual exposure / current annual exposure
    current_level: int
    target_level: int


_ADALIMUMAB = StandardDosing(2, "week")
_ETANERCEPT = StandardDosing(1, "week")
_UPADACITINIB = StandardDosing(1, "day", dose_mg=15, strengths_mg=(15, 30, 45))
_DEUCRAVACITINIB = StandardDosing(1, "day", dose_mg=6, strengths_mg=(6,))

# Keys are lowercase brand and generic names
STANDARD_MAINTENANCE_DOSING = {
    # IL-23 inhibitors
    "skyrizi": StandardDosing(12, "week"),
    "risankizumab": StandardDosing(12, "week"),
    "tremfya": StandardDosing(8, "week"),
    "guselkumab": StandardDosing(8, "week"),
    "ilumya": StandardDosing(12, "week"),
    "tildrakizumab": StandardDosing(12, "week"),

    # IL-17 inhibitors
    "cosentyx": StandardDosing(4, "week"),
    "secukinumab": StandardDosing(4, "week"),
    "taltz": StandardDosing(4, "week"),
    "ixekizumab": StandardDosing(4, "week"),
    "siliq": StandardDosing(1, "week"),
    "brodalumab": StandardDosing(1, "week"),

    # TNF inhibitors
    "humira": _ADALIMUMAB,
    "adalimumab": _ADALIMUMAB,
    "adalimumab-adbm": _ADALIMUMAB,
    "adalimumab-adaz": _ADALIMUMAB,
    "adalimumab-aaty": _ADALIMUMAB,
    "adalimumab-afzb": _ADALIMUMAB,
    "adalimumab-atto": _ADALIMUMAB,
    "amjevita": _ADALIMUMAB,
    "cyltezo": _ADALIMUMAB,
    "yusimry": _ADALIMUMAB,
    "hyrimoz": _ADALIMUMAB,
    "hadlima": _ADALIMUMAB,
    "abrilada": _ADALIMUMAB,
    "enbrel": _ETANERCEPT,
    "etanercept": _ETANERCEPT,
    "etanercept-szzs": _ETANERCEPT,
    "erelzi": _ETANERCEPT,
    "eticovo": _ETANERCEPT,
    "cimzia": StandardDosing(2, "week"),
    "certolizumab": StandardDosing(2, "week"),
    "simponi": StandardDosing(4, "week"),
    "golimumab": StandardDosing(4, "week"),

    # IL-12/23
    "stelara": StandardDosing(12, "week"),
    "ustekinumab": StandardDosing(12, "week"),

    # IL-4/13
    "dupixent": StandardDosing(2, "week"),
    "dupilumab": StandardDosing(2, "week"),

    # Oral JAK / TYK2
    "rinvoq": _UPADACITINIB,
    "upadacitinib": _UPADACITINIB,
    "sotyktu": _DEUCRAVACITINIB,
    "deucravacitinib": _DEUCRAVACITINIB,
}

# Fraction of standard exposure for each reduction level
_LEVEL_FRACTION = {0: 1.0, 25: 0.75, 50: 0.5}
_NEXT_LEVEL = {0: 25, 25: 50}

_EVERY_N = re.compile(r"every\s+(\d+)\s+(week|day)")
_Q_N = re.compile(r"\bq\s*(\d+)\s*(w|d)\b")
_DOSE_MG = re.compile(r"(\d+(?:\.\d+)?)\s*mg")


def get_standard_dosing(*names: Optional[str]) -> Optional[StandardDosing]:
    for name in names:
        if name:
            dosing = STANDARD_MAINTENANCE_DOSING.get(name.strip().lower())
            if dosing:
                return dosing
    return None


def parse_frequency(frequency: Optional[str]) -> Optional[Tuple[int, str]]:
    """'Every 16 weeks' -> (16, 'week'); also weekly/daily/every other week/q2w"""
    if not frequency:
        return None
    text = frequency.strip().lower()

    match = _EVERY_N.search(text)
    if match:
        return int(match.group(1)), match.group(2)
    match = _Q_N.search(text)
    if match:
        return int(match.group(1)), "week" if match.group(2) == "w" else "day"

    if "every other week" in text or "biweekly" in text:
        return 2, "week"
    if "weekly" in text or "every week" in text:
        return 1, "week"
    if "daily" in text or "every day" in text:
        return 1, "day"
    if "monthly" in text or "every month" in text:
        return 4, "week"
    return None


def parse_dose_mg(dose: Optional[str]) -> Optional[float]:
    if not dose:
        return None
    match = _DOSE_MG.search(dose.lower())
    return float(match.group(1)) if match else None


def reduction_level_from_ratio(ratio: float) -> int:
    if ratio <= 1.15:
        return 0
    if ratio <= 1.6:
        return 25
    return 50


def current_reduction_level(standard: StandardDosing, dose: Optional[str], frequency: Optional[str]) -> int:
    """
    0, 25 or 50 (% below standard exposure).

    Unparseable or unit-mismatched regimens are treated as standard dosing.
    """
    if standard.unit == "week":
        parsed = parse_frequency(frequency)
        if not parsed or parsed[1] != standard.unit:
            return 0
        return reduction_level_from_ratio(parsed[0] / standard.interval)

    current_mg = parse_dose_mg(dose)
    if not current_mg or not standard.dose_mg:
        return 0
    return reduction_level_from_ratio(standard.dose_mg / current_mg)


def _interval_days(parsed: Tuple[int, str]) -> int:
    return parsed[0] * 7 if parsed[1] == "week" else parsed[0]


def regimen_ratio(
    standard: Optional[StandardDosing],
    current_dose: Optional[str],
    current_frequency: Optional[str],
    new_dose: Optional[str],
    new_frequency: Optional[str],
) -> float:
    """New annual exposure relative to current; unparseable parts count as unchanged"""
    ratio = 1.0

    current = parse_frequency(current_frequency)
    if current is None and standard is not None:
        current = (standard.interval, standard.unit)
    new = parse_frequency(new_frequency)
    if current and new:
        ratio *= _interval_days(current) / _interval_days(new)

    current_mg = parse_dose_mg(current_dose) or (standard.dose_mg if standard else None)
    new_mg = parse_dose_mg(new_dose)
    if current_mg and new_mg:
        ratio *= new_mg / current_mg
    return ratio


def next_lower_strength(standard: StandardDosing, current_mg: Optional[float]) -> Optional[float]:
    """Largest marketed strength below the current dose, never under half the standard dose"""
    if not standard.dose_mg or not current_mg:
        return None
    floor = standard.dose_mg * _LEVEL_FRACTION[50]
    lower = [s for s in standard.strengths_mg if floor <= s < current_mg]
    return max(lower) if lower else None


def next_dosing_step(
    drug_name: str,
    generic_name: Optional[str] = None,
    dose: Optional[str] = None,
    frequency: Optional[str] = None,
) -> Optional[DosingStep]:
    """Next safe step down from the current regimen, or None if none is known"""
    standard = get_standard_dosing(drug_name, generic_name)
    if standard is None:
        return None

    level = current_reduction_level(standard, dose, frequency)
    target = _NEXT_LEVEL.get(level)
    if target is None:
        return None

    if standard.unit == "week":
        # ceil(std x 4/3) at 25%, std x 2 at 50%
        new_interval = math.ceil(standard.interval / _LEVEL_FRACTION[target])
        parsed = parse_frequency(frequency)
        current_interval = parsed[0] if parsed and parsed[1] == "week" else standard.interval
        if new_interval <= current_interval:
            return None
        return DosingStep(
            type=CandidateType.INTERVAL_EXTENSION,
            new_dose=dose,
            new_frequency=f"Every {new_interval} weeks",
            regimen_ratio=current_interval / new_interval,
            current_level=level,
            target_level=target,
        )

    current_mg = parse_dose_mg(dose) or standard.dose_mg
    new_mg = next_lower_strength(standard, current_mg)
    if new_mg is None:
        return None
    return DosingStep(
        type=CandidateType.DOSE_REDUCTION,
        new_dose=f"{new_mg:g} mg",
        new_frequency=frequency or "Once daily",
        regimen_ratio=new_mg / current_mg,
        current_level=level,
        target_level=target,
    )
