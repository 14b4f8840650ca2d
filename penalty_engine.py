## penalty_engine.py
# Bridge loan return schedule: base return at maturity plus weekly compounding penalties.

import base64
import io
import json
import logging
import math
import re
from dataclasses import dataclass, asdict
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import pandas as pd

logger = logging.getLogger(__name__)

BASE_PERIOD_LABEL = "Base Return"
MONTH_ABBREVIATIONS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
                       "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# Query-string keys and the values used when a key is missing or unusable.
DEFAULT_PARAMETERS: Dict[str, Any] = {
    "project": "",
    "principal": 200000.0,
    "baseRate": 16.5,
    "penaltyRate": 3.5,
    "maturityDate": "2024-12-27",
    "weeks": 6,
}


class InvalidParameters(ValueError):
    """Raised when loan parameters cannot produce a schedule."""


# -----------------------
# Data model
# -----------------------

@dataclass(frozen=True)
class LoanParameters:
    principal: float
    base_interest_rate: float
    weekly_penalty_rate: float
    maturity_date: date
    weeks_to_project: int
    project_name: str = ""

    def validate(self) -> None:
        if not isinstance(self.maturity_date, date):
            raise InvalidParameters(f"Maturity date is not a calendar date: {self.maturity_date!r}")
        if not math.isfinite(self.principal) or self.principal <= 0:
            raise InvalidParameters("Principal must be greater than zero.")
        if isinstance(self.weeks_to_project, bool) or not isinstance(self.weeks_to_project, int):
            raise InvalidParameters(f"Weeks to project must be a whole number: {self.weeks_to_project!r}")
        if self.weeks_to_project < 0:
            raise InvalidParameters("Weeks to project cannot be negative.")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectName": self.project_name,
            "principal": self.principal,
            "baseInterestRate": self.base_interest_rate,
            "weeklyPenaltyRate": self.weekly_penalty_rate,
            "maturityDate": self.maturity_date.isoformat(),
            "weeksToProject": self.weeks_to_project,
        }


@dataclass(frozen=True)
class ScheduleRow:
    period: str
    date_range: str
    principal: float
    interest: float
    total_return: float
    return_percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "dateRange": self.date_range,
            "principal": self.principal,
            "interest": self.interest,
            "totalReturn": self.total_return,
            "returnPercentage": self.return_percentage,
        }


@dataclass(frozen=True)
class ScheduleFormat:
    """Presentation settings for money and percentage columns."""
    currency_code: str = "USD"
    currency_symbol: str = "$"
    money_decimals: int = 0
    percent_decimals: int = 1


DEFAULT_FORMAT = ScheduleFormat()


# -----------------------
# Helpers
# -----------------------

def coerce_maturity_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise InvalidParameters(f"Maturity date is not a valid ISO date: {value!r}")


def _number_or_default(raw: Any, default: float, strict: bool, name: str) -> float:
    """Lenient mode mirrors `Number(x) || default`: blanks, garbage and zero fall back."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        if strict:
            raise InvalidParameters(f"Invalid numeric input for {name}: {raw!r}")
        return default
    if not math.isfinite(value):
        if strict:
            raise InvalidParameters(f"Invalid numeric input for {name}: {raw!r}")
        return default
    if value == 0 and not strict:
        return default
    return value


def parse_loan_parameters(args: Mapping[str, Any], strict: bool = False) -> LoanParameters:
    """
    Builds LoanParameters from query-string style key/value pairs.

    With strict=False (page and export links) anything unusable silently becomes
    the documented default. With strict=True (JSON API) missing keys still default
    but malformed values raise InvalidParameters.
    """
    args = args or {}
    raw_date = args.get("maturityDate")
    if raw_date is None or not str(raw_date).strip():
        maturity = coerce_maturity_date(DEFAULT_PARAMETERS["maturityDate"])
    elif strict:
        maturity = coerce_maturity_date(raw_date)
    else:
        try:
            maturity = coerce_maturity_date(raw_date)
        except InvalidParameters:
            logger.debug("Ignoring unparseable maturityDate %r", raw_date)
            maturity = coerce_maturity_date(DEFAULT_PARAMETERS["maturityDate"])

    weeks = _number_or_default(args.get("weeks"), DEFAULT_PARAMETERS["weeks"], strict, "weeks")
    return LoanParameters(
        project_name=str(args.get("project") or DEFAULT_PARAMETERS["project"]),
        principal=_number_or_default(args.get("principal"), DEFAULT_PARAMETERS["principal"], strict, "principal"),
        base_interest_rate=_number_or_default(args.get("baseRate"), DEFAULT_PARAMETERS["baseRate"], strict, "baseRate"),
        weekly_penalty_rate=_number_or_default(args.get("penaltyRate"), DEFAULT_PARAMETERS["penaltyRate"], strict, "penaltyRate"),
        maturity_date=maturity,
        weeks_to_project=int(weeks),
    )


def plain_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def build_share_query(params: LoanParameters) -> str:
    """Query string that parse_loan_parameters reads back into the same parameters."""
    return urlencode({
        "project": params.project_name,
        "principal": plain_number(params.principal),
        "baseRate": plain_number(params.base_interest_rate),
        "penaltyRate": plain_number(params.weekly_penalty_rate),
        "maturityDate": params.maturity_date.isoformat(),
        "weeks": str(params.weeks_to_project),
    })


def _group_thousands(value: float, decimals: int) -> str:
    quantum = Decimal(1).scaleb(-decimals)
    exact = Decimal(repr(abs(value)))
    with localcontext() as ctx:
        # Room for every integer digit plus the requested decimals.
        ctx.prec = max(ctx.prec, exact.adjusted() + decimals + 2)
        rounded = exact.quantize(quantum, rounding=ROUND_HALF_UP)
        return f"{rounded:,.{decimals}f}"


def format_currency(amount: float, fmt: ScheduleFormat = DEFAULT_FORMAT) -> str:
    if not math.isfinite(amount):
        return "N/A"
    sign = "-" if amount < 0 else ""
    body = _group_thousands(amount, fmt.money_decimals)
    if sign and float(body.replace(",", "")) == 0:
        sign = ""
    return f"{sign}{fmt.currency_symbol}{body}"


def format_percentage(percentage: float, fmt: ScheduleFormat = DEFAULT_FORMAT) -> str:
    if not math.isfinite(percentage):
        return "N/A"
    sign = "-" if percentage < 0 else ""
    return f"{sign}{_group_thousands(percentage, fmt.percent_decimals)}%"


def format_short_date(d: date) -> str:
    return f"{MONTH_ABBREVIATIONS[d.month - 1]} {d.day}"


def format_long_date(d: date) -> str:
    return f"{d.month}/{d.day}/{d.year}"


def format_schedule_rows(rows: List[ScheduleRow], fmt: ScheduleFormat = DEFAULT_FORMAT) -> List[Dict[str, str]]:
    return [{
        "period": row.period,
        "date_range": row.date_range,
        "principal": format_currency(row.principal, fmt),
        "interest": format_currency(row.interest, fmt),
        "total_return": format_currency(row.total_return, fmt),
        "return_percentage": format_percentage(row.return_percentage, fmt),
    } for row in rows]


def schedule_to_frame(rows: List[ScheduleRow]) -> pd.DataFrame:
    df = pd.DataFrame([asdict(r) for r in rows],
                      columns=["period", "date_range", "principal", "interest", "total_return", "return_percentage"])
    return df.rename(columns={
        "period": "Period",
        "date_range": "Date Range",
        "principal": "Principal",
        "interest": "Interest",
        "total_return": "Total Return",
        "return_percentage": "Return %",
    })


# -----------------------
# Core Engine
# -----------------------

def _require_finite(label: str, value: float) -> None:
    if not math.isfinite(value):
        raise InvalidParameters(f"{label} overflows.")



class PenaltyEngine:
    def generate_schedule(self, params: LoanParameters) -> List[ScheduleRow]:
        params.validate()

        principal = float(params.principal)
        maturity = params.maturity_date
        base_interest = principal * (params.base_interest_rate / 100)
        growth = 1 + (params.weekly_penalty_rate / 100)
        _require_finite("Base return", principal + base_interest)

        schedule: List[ScheduleRow] = [ScheduleRow(
            period=BASE_PERIOD_LABEL,
            date_range=f"Through {format_short_date(maturity)}",
            principal=principal,
            interest=base_interest,
            total_return=principal + base_interest,
            return_percentage=params.base_interest_rate,
        )]

        # Penalty compounds on the base interest only, never on the prior week's total.
        for week in range(1, params.weeks_to_project + 1):
            try:
                start = maturity + timedelta(days=(week - 1) * 7 + 1)
                end = start + timedelta(days=6)
            except OverflowError:
                raise InvalidParameters(f"Week {week} falls past the last representable date.")
            try:
                interest = base_interest * math.pow(growth, week)
            except OverflowError:
                raise InvalidParameters(f"Penalty growth overflows at week {week}.")
            return_percentage = (interest / principal) * 100
            _require_finite(f"Week {week} total return", principal + interest)
            _require_finite(f"Week {week} return percentage", return_percentage)
            schedule.append(ScheduleRow(
                period=f"Week {week} Penalty",
                date_range=f"{format_short_date(start)} - {format_short_date(end)}",
                principal=principal,
                interest=interest,
                total_return=principal + interest,
                return_percentage=return_percentage,
            ))

        logger.debug("Generated %d schedule rows for %s", len(schedule), params.project_name or "<unnamed>")
        return schedule

    def summarize(self, rows: List[ScheduleRow]) -> Dict[str, Any]:
        base, final = rows[0], rows[-1]
        return {
            "base_total_return": round(base.total_return, 2),
            "final_total_return": round(final.total_return, 2),
            "penalty_interest": round(final.interest - base.interest, 2),
            "final_return_percentage": round(final.return_percentage, 4),
            "weeks_projected": len(rows) - 1,
        }

    def calculate_penalty_schedule(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            params = parse_loan_parameters(data, strict=True)
            rows = self.generate_schedule(params)
        except InvalidParameters as e:
            return {'error': str(e)}
        return {
            'loan_details': params.to_dict(),
            'summary': self.summarize(rows),
            'schedule': [r.to_dict() for r in rows],
        }


# -----------------------
# Excel Exporter
# -----------------------

def _export_filename(params: LoanParameters) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", params.project_name).strip("_").lower()
    return f"{slug}_penalty_schedule.xlsx" if slug else "penalty_schedule.xlsx"


def export_schedule_to_excel_bytes(params: LoanParameters, rows: List[ScheduleRow],
                                   fmt: ScheduleFormat = DEFAULT_FORMAT) -> Tuple[bytes, str]:
    df_schedule = schedule_to_frame(rows)
    df_details = pd.DataFrame([
        {"metric": "Project", "value": params.project_name},
        {"metric": "Principal", "value": params.principal},
        {"metric": "Base Rate %", "value": params.base_interest_rate},
        {"metric": "Weekly Penalty %", "value": params.weekly_penalty_rate},
        {"metric": "Maturity Date", "value": params.maturity_date.isoformat()},
        {"metric": "Weeks Projected", "value": params.weeks_to_project},
        {"metric": "Currency", "value": fmt.currency_code},
    ])

    money_pattern = f"{fmt.currency_symbol}#,##0" + ("." + "0" * fmt.money_decimals if fmt.money_decimals else "")
    pct_pattern = "0" + ("." + "0" * fmt.percent_decimals if fmt.percent_decimals else "") + '"%"'

    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine='xlsxwriter') as writer:
        df_schedule.to_excel(writer, sheet_name='Schedule', index=False)
        df_details.to_excel(writer, sheet_name='Loan_Details', index=False)
        workbook = writer.book
        header_fmt = workbook.add_format({'bold': True, 'bg_color': '#DCE6F1', 'border': 1})
        currency_fmt = workbook.add_format({'num_format': money_pattern, 'border': 1})
        pct_fmt = workbook.add_format({'num_format': pct_pattern, 'border': 1})
        default_fmt = workbook.add_format({'border': 1})

        worksheet = writer.sheets['Schedule']
        worksheet.set_row(0, None, header_fmt)
        for i, col in enumerate(df_schedule.columns):
            width = max(14, min(40, len(str(col)) + 2))
            if col in ('Principal', 'Interest', 'Total Return'):
                worksheet.set_column(i, i, width, currency_fmt)
            elif col == 'Return %':
                worksheet.set_column(i, i, width, pct_fmt)
            else:
                worksheet.set_column(i, i, width, default_fmt)

        details_sheet = writer.sheets['Loan_Details']
        details_sheet.set_row(0, None, header_fmt)
        details_sheet.set_column(0, 1, 20, default_fmt)

        rows_n = len(df_schedule)
        total_idx = df_schedule.columns.get_loc('Total Return')
        chart = workbook.add_chart({'type': 'column'})
        chart.add_series({
            'name': 'Total Return',
            'categories': ['Schedule', 1, 0, rows_n, 0],
            'values': ['Schedule', 1, total_idx, rows_n, total_idx],
            'fill': {'color': '#4472C4'},
        })
        chart.set_title({'name': 'Total return by period'})
        chart.set_x_axis({'name': 'Period'}); chart.set_y_axis({'name': 'Total Return'})
        chart.set_legend({'none': True})
        worksheet.insert_chart(rows_n + 3, 0, chart, {'x_scale': 1.4, 'y_scale': 1.1})
    buffer.seek(0)
    return buffer.read(), _export_filename(params)


# -----------------------
# Router
# -----------------------

def process_request(script: str, data: Optional[Dict[str, Any]]) -> str:
    """
    Router for the JSON API. Accepts a script name (free text) and a data dict.
    Returns a JSON string.
    """
    engine = PenaltyEngine()
    result: Dict[str, Any] = {}
    data = data if isinstance(data, dict) else {}

    try:
        script_raw = script or ""
        script_lower = " ".join(script_raw.lower().split())
        logger.debug("process_request: script=%r data keys=%s", script_lower, list(data.keys()))

        if "export" in script_lower:
            params = parse_loan_parameters(data, strict=True)
            rows = engine.generate_schedule(params)
            excel_bytes, filename = export_schedule_to_excel_bytes(params, rows)
            result = {'excel_base64': base64.b64encode(excel_bytes).decode('ascii'), 'filename': filename}

        elif "penalty" in script_lower or "schedule" in script_lower:
            result = engine.calculate_penalty_schedule(data)

        else:
            result = {"error": "Unknown script name.", "received_script": script_raw, "normalized_script": script_lower}

    except InvalidParameters as e:
        result = {"error": str(e)}
    except Exception as e:
        logger.exception("Penalty engine failure")
        result = {"error": f"Python engine error: {str(e)}", "received_script": script, "received_data": data}

    return json.dumps(result)
