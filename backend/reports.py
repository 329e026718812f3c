"""PDF documents and spreadsheet exports for assessments and quotes."""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import openpyxl
from fpdf import FPDF

logger = logging.getLogger(__name__)

COMPANY_NAME = "NXTKonekt"
QUOTE_VALIDITY_DAYS = 30
LABOR_HOLD_DESCRIPTION = "Labor hold for possible overage, returned if unused in final billing"

SERVICE_LABELS = {
    "fixed-wireless": "Fixed Wireless Access",
    "fleet-tracking": "Fleet Tracking",
    "fleet-camera": "Fleet Camera",
}

BRAND_COLOR = (0, 82, 147)
MUTED_COLOR = (110, 110, 110)

ASSESSMENT_EXPORT_COLUMNS: List[Tuple[str, str]] = [
    ("id", "Assessment ID"),
    ("service_type", "Service Type"),
    ("status", "Status"),
    ("customer_company_name", "Customer Company"),
    ("customer_contact_name", "Customer Contact"),
    ("customer_email", "Customer Email"),
    ("customer_phone", "Customer Phone"),
    ("site_address", "Site Address"),
    ("industry", "Industry"),
    ("sales_executive_name", "Sales Executive"),
    ("sales_executive_email", "Sales Executive Email"),
    ("partner_email", "Partner Email"),
    ("organization_name", "Organization"),
    ("total_cost", "Total Cost"),
    ("quote_number", "Quote Number"),
    ("quote_status", "Quote Status"),
    ("created_at", "Created At"),
    ("updated_at", "Updated At"),
]

QUOTE_EXPORT_COLUMNS: List[Tuple[str, str]] = [
    ("quote_number", "Quote Number"),
    ("status", "Status"),
    ("customer_company_name", "Customer Company"),
    ("customer_email", "Customer Email"),
    ("service_type", "Service Type"),
    ("organization_name", "Organization"),
    ("survey_cost", "Survey"),
    ("installation_cost", "Installation"),
    ("configuration_cost", "Configuration"),
    ("removal_cost", "Removal"),
    ("labor_hold_cost", "Labor Hold"),
    ("hardware_cost", "Hardware"),
    ("total_cost", "Total"),
    ("hubspot_deal_id", "HubSpot Deal"),
    ("created_at", "Created At"),
]


def pdf_text(value: Any) -> str:
    """Core PDF fonts only cover latin-1; anything else is replaced."""
    if value is None:
        return ""
    return str(value).encode("latin-1", "replace").decode("latin-1")


def money(value: Any) -> str:
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        amount = 0.0
    return f"${amount:,.2f}"


def hours_label(value: Any) -> str:
    try:
        hours = float(value or 0)
    except (TypeError, ValueError):
        hours = 0.0
    if hours.is_integer():
        hours_text = str(int(hours))
    else:
        hours_text = f"{hours:g}"
    return f"{hours_text} hr" if hours == 1 else f"{hours_text} hrs"


def service_label(service_type: Optional[str]) -> str:
    return SERVICE_LABELS.get((service_type or "").strip().lower(), service_type or "Service")


def format_date(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(str(value)).strftime("%B %d, %Y")
    except ValueError:
        return str(value)


class PortalPDF(FPDF):
    def __init__(self, title: str) -> None:
        super().__init__()
        self.document_title = title
        self.alias_nb_pages()
        self.set_auto_page_break(auto=True, margin=18)

    def header(self) -> None:
        self.set_font("helvetica", "B", 16)
        self.set_text_color(*BRAND_COLOR)
        self.cell(0, 10, COMPANY_NAME, new_x="LMARGIN", new_y="NEXT")
        self.set_font("helvetica", "", 10)
        self.set_text_color(*MUTED_COLOR)
        self.cell(0, 6, pdf_text(self.document_title), new_x="LMARGIN", new_y="NEXT")
        self.ln(4)
        self.set_text_color(0, 0, 0)

    def footer(self) -> None:
        self.set_y(-15)
        self.set_font("helvetica", "I", 8)
        self.set_text_color(*MUTED_COLOR)
        self.cell(0, 10, f"Page {self.page_no()}/{{nb}}", align="C")

    def section(self, title: str) -> None:
        self.ln(2)
        self.set_font("helvetica", "B", 12)
        self.set_fill_color(235, 241, 248)
        self.set_text_color(*BRAND_COLOR)
        self.cell(0, 8, pdf_text(title), fill=True, new_x="LMARGIN", new_y="NEXT")
        self.set_text_color(0, 0, 0)
        self.ln(2)

    def field(self, label: str, value: Any) -> None:
        text = pdf_text(value)
        if not text:
            return
        self.set_font("helvetica", "B", 10)
        self.cell(55, 6, pdf_text(label))
        self.set_font("helvetica", "", 10)
        self.multi_cell(0, 6, text, new_x="LMARGIN", new_y="NEXT")

    def paragraph(self, text: Any) -> None:
        self.set_font("helvetica", "", 10)
        self.multi_cell(0, 6, pdf_text(text), new_x="LMARGIN", new_y="NEXT")

    def line_item_table(self, rows: Sequence[Tuple[str, str, str]], total: Any) -> None:
        widths = (120, 25, 45)
        self.set_font("helvetica", "B", 10)
        self.set_fill_color(*BRAND_COLOR)
        self.set_text_color(255, 255, 255)
        for width, heading, align in zip(widths, ("Description", "Hours", "Amount"), ("L", "C", "R")):
            self.cell(width, 8, heading, border=1, align=align, fill=True)
        self.ln()
        self.set_text_color(0, 0, 0)
        self.set_font("helvetica", "", 9)
        for description, hours, amount in rows:
            self.cell(widths[0], 7, pdf_text(description), border=1)
            self.cell(widths[1], 7, pdf_text(hours), border=1, align="C")
            self.cell(widths[2], 7, pdf_text(amount), border=1, align="R")
            self.ln()
        self.set_font("helvetica", "B", 10)
        self.cell(widths[0] + widths[1], 8, "Total", border=1, align="R")
        self.cell(widths[2], 8, money(total), border=1, align="R")
        self.ln(10)


def quote_line_items(quote: Mapping[str, Any]) -> List[Tuple[str, str, str]]:
    rows: List[Tuple[str, str, str]] = []
    if float(quote.get("survey_hours") or 0) > 0:
        rows.append(("Site survey", hours_label(quote.get("survey_hours")), money(quote.get("survey_cost"))))
    rows.append(
        ("Installation", hours_label(quote.get("installation_hours")), money(quote.get("installation_cost")))
    )
    if float(quote.get("configuration_hours") or 0) > 0:
        rows.append(
            ("Configuration", hours_label(quote.get("configuration_hours")), money(quote.get("configuration_cost")))
        )
    if float(quote.get("removal_hours") or 0) > 0:
        rows.append(
            ("Existing system removal", hours_label(quote.get("removal_hours")), money(quote.get("removal_cost")))
        )
    rows.append(
        (LABOR_HOLD_DESCRIPTION, hours_label(quote.get("labor_hold_hours")), money(quote.get("labor_hold_cost")))
    )
    if float(quote.get("hardware_cost") or 0) > 0:
        rows.append(("Hardware and cabling", "", money(quote.get("hardware_cost"))))
    training_cost = float(quote.get("training_cost") or 0)
    rows.append(("Training", "", money(training_cost) if training_cost > 0 else "Included"))
    return rows


def generate_quote_pdf(
    assessment: Mapping[str, Any],
    quote: Mapping[str, Any],
    organization_name: Optional[str],
    output_dir: Path,
) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    quote_number = quote.get("quote_number") or quote.get("id")
    pdf = PortalPDF(f"Installation Quote {quote_number}")
    pdf.add_page()

    pdf.section("Quote Details")
    pdf.field("Quote number", quote_number)
    pdf.field("Date", format_date(quote.get("created_at")))
    pdf.field("Service", service_label(assessment.get("service_type")))
    pdf.field("Prepared by", organization_name or COMPANY_NAME)
    pdf.field("Sales executive", assessment.get("sales_executive_name"))

    pdf.section("Customer")
    pdf.field("Company", assessment.get("customer_company_name"))
    pdf.field("Contact", assessment.get("customer_contact_name"))
    pdf.field("Email", assessment.get("customer_email"))
    pdf.field("Phone", assessment.get("customer_phone"))
    pdf.field("Site address", assessment.get("site_address"))

    pdf.section("Pricing")
    pdf.line_item_table(quote_line_items(quote), quote.get("total_cost"))

    pdf.set_font("helvetica", "I", 9)
    pdf.set_text_color(*MUTED_COLOR)
    pdf.multi_cell(
        0,
        5,
        f"This quote is valid for {QUOTE_VALIDITY_DAYS} days from the date above. "
        "Labor is billed at the hourly rate shown; any unused labor hold is returned in final billing.",
        new_x="LMARGIN",
        new_y="NEXT",
    )

    target = output_dir / f"quote-{quote_number}.pdf"
    pdf.output(str(target))
    logger.info("Generated quote PDF %s", target.name)
    return target


def _vehicle_rows(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if not isinstance(value, list):
        return []
    return [row for row in value if isinstance(row, dict)]


def generate_assessment_pdf(
    assessment: Mapping[str, Any],
    user: Optional[Mapping[str, Any]],
    organization: Optional[Mapping[str, Any]],
    quote: Optional[Mapping[str, Any]],
    output_dir: Path,
) -> Path:
    """Render the full assessment report used by admins.

    Sections follow the service type; the pricing table is included once a
    quote exists.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    service_type = (assessment.get("service_type") or "").strip().lower()
    pdf = PortalPDF(f"{service_label(service_type)} Assessment Report")
    pdf.add_page()

    pdf.section("Partner")
    if user:
        partner_name = " ".join(
            part for part in [user.get("first_name"), user.get("last_name")] if part
        )
        pdf.field("Partner", partner_name or user.get("email"))
        pdf.field("Partner email", user.get("email"))
    if organization:
        pdf.field("Organization", organization.get("name"))
        pdf.field("Partner status", organization.get("partner_status"))
    pdf.field("Sales executive", assessment.get("sales_executive_name"))
    pdf.field("Sales executive email", assessment.get("sales_executive_email"))
    pdf.field("Sales executive phone", assessment.get("sales_executive_phone"))

    pdf.section("Customer")
    pdf.field("Company", assessment.get("customer_company_name"))
    pdf.field("Contact", assessment.get("customer_contact_name"))
    pdf.field("Email", assessment.get("customer_email"))
    pdf.field("Phone", assessment.get("customer_phone"))
    pdf.field("Site address", assessment.get("site_address"))
    pdf.field("Industry", assessment.get("industry"))
    pdf.field("Preferred installation", assessment.get("preferred_installation_date"))

    if service_type == "fixed-wireless":
        pdf.section("Site Details")
        pdf.field("Building type", assessment.get("building_type"))
        pdf.field("Coverage area (sq ft)", assessment.get("coverage_area"))
        pdf.field("Floors", assessment.get("number_of_floors"))
        pdf.field("Devices", assessment.get("device_count"))
        pdf.field("Routers", assessment.get("router_count"))
        pdf.field("Router location", assessment.get("router_location"))
        pdf.field("Cable footage", assessment.get("cable_footage"))
        pdf.field("Signal strength", assessment.get("signal_strength"))
        pdf.field("Connection usage", assessment.get("connection_usage"))
        pdf.section("Installation Requirements")
        pdf.field("Ceiling mount", assessment.get("ceiling_mount"))
        pdf.field("Outdoor coverage", assessment.get("outdoor_coverage"))
        pdf.field("Ethernet required", assessment.get("ethernet_required"))
        pdf.field("Antenna cable", assessment.get("antenna_cable"))
        pdf.field("Device assistance", assessment.get("device_connection_assistance"))
        pdf.field("Dual WAN", assessment.get("dual_wan_support"))
        pdf.field("Router make/model", assessment.get("router_make_model"))
        pdf.field("Power available", assessment.get("power_available"))
    else:
        pdf.section("Fleet Details")
        pdf.field("Vehicles", assessment.get("device_count"))
        pdf.field("Tracker type", assessment.get("tracker_type"))
        pdf.field("IoT tracking partner", assessment.get("iot_tracking_partner"))
        pdf.field("Camera solution", assessment.get("camera_solution_type"))
        pdf.field("Cameras per vehicle", assessment.get("number_of_cameras"))
        pdf.field("Video partner", assessment.get("video_partner"))
        pdf.field("Removal needed", assessment.get("removal_needed"))
        pdf.field("Existing system", assessment.get("existing_system"))
        vehicles = _vehicle_rows(assessment.get("vehicle_details"))
        if vehicles:
            pdf.section("Vehicles")
            for index, vehicle in enumerate(vehicles, start=1):
                description = " ".join(
                    str(vehicle.get(key) or "") for key in ("year", "make", "model") if vehicle.get(key)
                )
                extra = vehicle.get("vin") or vehicle.get("license_plate") or ""
                pdf.paragraph(f"{index}. {description} {extra}".strip())

    if assessment.get("additional_notes"):
        pdf.section("Notes")
        pdf.paragraph(assessment.get("additional_notes"))

    if quote:
        pdf.section(f"Pricing - Quote {quote.get('quote_number') or ''}".strip())
        pdf.field("Quote status", quote.get("status"))
        pdf.line_item_table(quote_line_items(quote), quote.get("total_cost"))

    date_part = datetime.utcnow().strftime("%Y-%m-%d")
    target = output_dir / f"assessment-{assessment.get('id')}-{date_part}.pdf"
    pdf.output(str(target))
    logger.info("Generated assessment report %s", target.name)
    return target


def _csv_value(value: Any) -> Any:
    if value is None:
        return ""
    return value


def build_csv(rows: Iterable[Mapping[str, Any]], columns: Sequence[Tuple[str, str]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow([label for _, label in columns])
    for row in rows:
        writer.writerow([_csv_value(row.get(key)) for key, _ in columns])
    return buffer.getvalue()


def build_assessments_csv(rows: Iterable[Mapping[str, Any]]) -> str:
    return build_csv(rows, ASSESSMENT_EXPORT_COLUMNS)


def build_quotes_csv(rows: Iterable[Mapping[str, Any]]) -> str:
    return build_csv(rows, QUOTE_EXPORT_COLUMNS)


def build_assessments_xlsx(rows: Iterable[Mapping[str, Any]]) -> bytes:
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Assessments"
    sheet.append([label for _, label in ASSESSMENT_EXPORT_COLUMNS])
    for row in rows:
        sheet.append([_csv_value(row.get(key)) for key, _ in ASSESSMENT_EXPORT_COLUMNS])
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
