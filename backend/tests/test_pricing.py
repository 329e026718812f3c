import unittest
from pathlib import Path
import sys

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pricing  # noqa: E402


class PricingTests(unittest.TestCase):
    def test_device_bands_adjust_configuration(self) -> None:
        expected = {1: 1.0, 3: 1.0, 5: 1.0, 7: 2.0, 10: 2.0, 12: 3.0}
        for device_count, hours in expected.items():
            breakdown = pricing.calculate_pricing({"service_type": "fixed-wireless", "device_count": device_count})
            self.assertEqual(breakdown.configuration_hours, hours, device_count)

    def test_coverage_band_edges_are_inclusive(self) -> None:
        self.assertEqual(pricing.coverage_adjustment(2000), 0.0)
        self.assertEqual(pricing.coverage_adjustment(2001), 1.0)
        self.assertEqual(pricing.coverage_adjustment(5000), 1.0)
        self.assertEqual(pricing.coverage_adjustment(5001), 2.0)

    def test_large_site_weak_signal_scenario(self) -> None:
        breakdown = pricing.calculate_pricing(
            {
                "service_type": "fixed-wireless",
                "coverage_area": 6000,
                "device_count": 12,
                "signal_strength": "3-bars",
            }
        )
        self.assertEqual(breakdown.installation_hours, 5.0)
        self.assertEqual(breakdown.configuration_hours, 3.0)
        self.assertEqual(breakdown.survey_hours, 0.0)
        self.assertEqual(breakdown.installation_cost, 950.0)
        self.assertEqual(breakdown.configuration_cost, 570.0)
        self.assertEqual(breakdown.labor_hold_cost, 190.0)
        self.assertEqual(breakdown.total_cost, 1710.0)

    def test_total_is_sum_of_every_component(self) -> None:
        breakdown = pricing.calculate_pricing(
            {
                "service_type": "fixed-wireless",
                "coverage_area": "3500",
                "number_of_floors": 4,
                "device_count": 8,
                "signal_strength": "2-bars",
                "ceiling_mount": True,
                "outdoor_coverage": True,
                "router_count": 3,
                "antenna_cable": "yes",
                "device_connection_assistance": "yes",
                "dual_wan_support": "yes",
                "cable_footage": "120",
            }
        )
        self.assertEqual(breakdown.survey_hours, 1.0)
        # 2 base + 1 coverage + 2 signal + 1.0 flags + 2 extra routers + 1 antenna
        self.assertEqual(breakdown.installation_hours, 9.0)
        self.assertEqual(breakdown.configuration_hours, 3.5)
        self.assertEqual(breakdown.hardware_cost, 840.0)
        self.assertAlmostEqual(breakdown.total_cost, sum(breakdown.cost_components().values()), places=2)
        self.assertEqual(breakdown.total_cost, 190.0 + 1710.0 + 665.0 + 190.0 + 840.0)

    def test_pricing_is_deterministic(self) -> None:
        assessment = {"service_type": "fleet-camera", "device_count": 20, "number_of_cameras": 4, "removal_needed": "yes"}
        first = pricing.calculate_pricing(assessment)
        second = pricing.calculate_pricing(assessment)
        self.assertEqual(first.model_dump(), second.model_dump())

    def test_unparsable_numbers_count_as_zero(self) -> None:
        breakdown = pricing.calculate_pricing(
            {"service_type": "fixed-wireless", "coverage_area": "lots", "device_count": None, "cable_footage": "n/a"}
        )
        self.assertEqual(breakdown.installation_hours, 2.0)
        self.assertEqual(breakdown.configuration_hours, 1.0)
        self.assertEqual(breakdown.hardware_cost, 0.0)

    def test_negative_numbers_count_as_zero(self) -> None:
        breakdown = pricing.calculate_pricing(
            {"service_type": "fixed-wireless", "coverage_area": -8000, "device_count": "-4", "cable_footage": "-100"}
        )
        self.assertEqual(breakdown.installation_hours, 2.0)
        self.assertEqual(breakdown.configuration_hours, 1.0)
        self.assertEqual(breakdown.hardware_cost, 0.0)
        self.assertEqual(breakdown.total_cost, 190.0 + 380.0 + 190.0)

    def test_fleet_tracking_vehicle_bands(self) -> None:
        expected = {3: 1.0, 6: 3.0, 15: 3.0, 16: 5.0, 31: 7.0}
        for vehicles, hours in expected.items():
            breakdown = pricing.calculate_pricing({"service_type": "fleet-tracking", "device_count": vehicles})
            self.assertEqual(breakdown.installation_hours, hours, vehicles)
            self.assertEqual(breakdown.configuration_hours, 0.0)

        hardwired = pricing.calculate_pricing(
            {"service_type": "fleet-tracking", "device_count": 3, "tracker_type": "Hardwired"}
        )
        self.assertEqual(hardwired.installation_hours, 2.0)

    def test_fleet_vehicle_count_falls_back_to_vehicle_details(self) -> None:
        details = [{"make": "Ford", "model": "Transit"} for _ in range(8)]
        breakdown = pricing.calculate_pricing({"service_type": "fleet-tracking", "vehicle_details": details})
        self.assertEqual(breakdown.installation_hours, 3.0)

    def test_fleet_camera_removal_only_when_needed(self) -> None:
        without_removal = pricing.calculate_pricing(
            {"service_type": "fleet-camera", "device_count": 20, "number_of_cameras": 3}
        )
        self.assertEqual(without_removal.installation_hours, 6.0)
        self.assertEqual(without_removal.removal_hours, 0.0)

        with_removal = pricing.calculate_pricing(
            {"service_type": "fleet-camera", "device_count": 20, "number_of_cameras": 3, "removal_needed": "yes"}
        )
        self.assertEqual(with_removal.removal_hours, 3.0)
        self.assertEqual(with_removal.removal_cost, 570.0)
        self.assertEqual(with_removal.total_cost, round(sum(with_removal.cost_components().values()), 2))

    def test_service_type_aliases(self) -> None:
        self.assertEqual(pricing.normalize_service_type("site-assessment"), "fixed-wireless")
        self.assertEqual(pricing.normalize_service_type(" Fleet-Camera "), "fleet-camera")
        self.assertIsNone(pricing.normalize_service_type("satellite"))
        self.assertIsNone(pricing.normalize_service_type(""))


if __name__ == "__main__":
    unittest.main()
