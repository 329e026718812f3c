"""Quote pricing for installation assessments.

Hours per phase start from a fixed base and grow with additive adjustments
keyed on bands of the assessment inputs. Costs are hours multiplied by the
hourly rate plus flat hardware costs.

Band boundaries are inclusive on the upper edge:

    coverage area (sq ft)   <= 2000: +0   2001-5000: +1   > 5000: +2
    device count            <= 5:    +0   6-10:      +1   > 10:   +2
    vehicle count           <= 5:    +0   6-15:      +2   16-30:  +4   > 30: +6
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel

HOURLY_RATE = 190.0
CABLE_COST_PER_FOOT = 7.0
LABOR_HOLD_HOURS = 1.0

SERVICE_FIXED_WIRELESS = "fixed-wireless"
SERVICE_FLEET_TRACKING = "fleet-tracking"
SERVICE_FLEET_CAMERA = "fleet-camera"
SERVICE_TYPES = {SERVICE_FIXED_WIRELESS, SERVICE_FLEET_TRACKING, SERVICE_FLEET_CAMERA}
SERVICE_TYPE_ALIASES = {"site-assessment": SERVICE_FIXED_WIRELESS}

FIXED_WIRELESS_INSTALLATION_BASE = 2.0
FIXED_WIRELESS_CONFIGURATION_BASE = 1.0
FLEET_INSTALLATION_BASE = 1.0
CAMERA_REMOVAL_BASE = 1.0
FEATURE_FLAG_HOURS = 0.5

COVERAGE_BANDS: List[Tuple[float, float]] = [(2000, 0.0), (5000, 1.0)]
COVERAGE_TOP_BAND = 2.0
DEVICE_BANDS: List[Tuple[float, float]] = [(5, 0.0), (10, 1.0)]
DEVICE_TOP_BAND = 2.0
VEHICLE_BANDS: List[Tuple[float, float]] = [(5, 0.0), (15, 2.0), (30, 4.0)]
VEHICLE_TOP_BAND = 6.0

SIGNAL_ADJUSTMENTS = {
    "5-bars": 0.0,
    "4-bars": 0.0,
    "3-bars": 1.0,
    "2-bars": 2.0,
    "1-bar": 2.0,
    "1-bars": 2.0,
    "no-signal": 2.0,
}

FIXED_WIRELESS_FEATURE_FLAGS = ("ceiling_mount", "ethernet_required", "outdoor_coverage")


class PricingBreakdown(BaseModel):
    service_type: str
    hourly_rate: float = HOURLY_RATE
    survey_hours: float = 0.0
    installation_hours: float = 0.0
    configuration_hours: float = 0.0
    removal_hours: float = 0.0
    labor_hold_hours: float = LABOR_HOLD_HOURS
    survey_cost: float = 0.0
    installation_cost: float = 0.0
    configuration_cost: float = 0.0
    removal_cost: float = 0.0
    labor_hold_cost: float = 0.0
    training_cost: float = 0.0
    hardware_cost: float = 0.0
    total_cost: float = 0.0

    def cost_components(self) -> Dict[str, float]:
        return {
            "survey": self.survey_cost,
            "installation": self.installation_cost,
            "configuration": self.configuration_cost,
            "removal": self.removal_cost,
            "labor_hold": self.labor_hold_cost,
            "training": self.training_cost,
            "hardware": self.hardware_cost,
        }


def normalize_service_type(value: Optional[str]) -> Optional[str]:
    key = (value or "").strip().lower()
    if not key:
        return None
    key = SERVICE_TYPE_ALIASES.get(key, key)
    return key if key in SERVICE_TYPES else None


def to_number(value: Any) -> float:
    """Parse a numeric form value; absent, unparsable or negative input counts as 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if value == value and value >= 0 else 0.0
    text = str(value).strip().replace(",", "")
    if not text:
        return 0.0
    try:
        parsed = float(text)
    except ValueError:
        return 0.0
    if parsed != parsed or parsed in (float("inf"), float("-inf")) or parsed < 0:
        return 0.0
    return parsed


def is_yes(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value or "").strip().lower() in {"yes", "true", "1", "on"}


def band_adjustment(value: float, bands: List[Tuple[float, float]], top: float) -> float:
    for upper, hours in bands:
        if value <= upper:
            return hours
    return top


def coverage_adjustment(coverage_area: Any) -> float:
    return band_adjustment(to_number(coverage_area), COVERAGE_BANDS, COVERAGE_TOP_BAND)


def device_adjustment(device_count: Any) -> float:
    return band_adjustment(to_number(device_count), DEVICE_BANDS, DEVICE_TOP_BAND)


def vehicle_adjustment(vehicle_count: Any) -> float:
    return band_adjustment(to_number(vehicle_count), VEHICLE_BANDS, VEHICLE_TOP_BAND)


def signal_adjustment(signal_strength: Any) -> float:
    return SIGNAL_ADJUSTMENTS.get(str(signal_strength or "").strip().lower(), 0.0)


def vehicle_count(assessment: Mapping[str, Any]) -> float:
    count = to_number(assessment.get("device_count"))
    if count:
        return count
    details = assessment.get("vehicle_details")
    if isinstance(details, str):
        try:
            details = json.loads(details)
        except ValueError:
            details = None
    if isinstance(details, list):
        return float(len(details))
    return 0.0


def _fixed_wireless_hours(assessment: Mapping[str, Any]) -> Dict[str, float]:
    survey = 1.0 if to_number(assessment.get("number_of_floors")) >= 3 else 0.0

    installation = FIXED_WIRELESS_INSTALLATION_BASE
    installation += coverage_adjustment(assessment.get("coverage_area"))
    installation += signal_adjustment(assessment.get("signal_strength"))
    for flag in FIXED_WIRELESS_FEATURE_FLAGS:
        if is_yes(assessment.get(flag)):
            installation += FEATURE_FLAG_HOURS
    installation += max(to_number(assessment.get("router_count")) - 1, 0.0)
    if is_yes(assessment.get("antenna_cable")):
        installation += 1.0

    configuration = FIXED_WIRELESS_CONFIGURATION_BASE
    configuration += device_adjustment(assessment.get("device_count"))
    if is_yes(assessment.get("device_connection_assistance")):
        configuration += 1.0
    if is_yes(assessment.get("dual_wan_support")):
        configuration += 0.5

    return {
        "survey_hours": survey,
        "installation_hours": installation,
        "configuration_hours": configuration,
        "removal_hours": 0.0,
    }


def _fleet_tracking_hours(assessment: Mapping[str, Any]) -> Dict[str, float]:
    installation = FLEET_INSTALLATION_BASE + vehicle_adjustment(vehicle_count(assessment))
    if str(assessment.get("tracker_type") or "").strip().lower() == "hardwired":
        installation += 1.0
    return {
        "survey_hours": 0.0,
        "installation_hours": installation,
        "configuration_hours": 0.0,
        "removal_hours": 0.0,
    }


def _fleet_camera_hours(assessment: Mapping[str, Any]) -> Dict[str, float]:
    band = vehicle_adjustment(vehicle_count(assessment))
    installation = FLEET_INSTALLATION_BASE + band
    if to_number(assessment.get("number_of_cameras")) > 2:
        installation += 1.0
    removal = 0.0
    if is_yes(assessment.get("removal_needed")):
        removal = CAMERA_REMOVAL_BASE + band / 2
    return {
        "survey_hours": 0.0,
        "installation_hours": installation,
        "configuration_hours": 0.0,
        "removal_hours": removal,
    }


def _cost(hours: float, rate: float) -> float:
    return round(hours * rate, 2)


def calculate_pricing(assessment: Mapping[str, Any], *, hourly_rate: float = HOURLY_RATE) -> PricingBreakdown:
    service_type = normalize_service_type(assessment.get("service_type")) or SERVICE_FIXED_WIRELESS
    if service_type == SERVICE_FLEET_TRACKING:
        hours = _fleet_tracking_hours(assessment)
        hardware_cost = 0.0
    elif service_type == SERVICE_FLEET_CAMERA:
        hours = _fleet_camera_hours(assessment)
        hardware_cost = 0.0
    else:
        hours = _fixed_wireless_hours(assessment)
        hardware_cost = round(to_number(assessment.get("cable_footage")) * CABLE_COST_PER_FOOT, 2)

    breakdown = PricingBreakdown(
        service_type=service_type,
        hourly_rate=hourly_rate,
        labor_hold_hours=LABOR_HOLD_HOURS,
        labor_hold_cost=_cost(LABOR_HOLD_HOURS, hourly_rate),
        hardware_cost=hardware_cost,
        **hours,
    )
    breakdown.survey_cost = _cost(breakdown.survey_hours, hourly_rate)
    breakdown.installation_cost = _cost(breakdown.installation_hours, hourly_rate)
    breakdown.configuration_cost = _cost(breakdown.configuration_hours, hourly_rate)
    breakdown.removal_cost = _cost(breakdown.removal_hours, hourly_rate)
    breakdown.total_cost = round(sum(breakdown.cost_components().values()), 2)
    return breakdown
