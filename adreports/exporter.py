"""Per-account HTML summaries rendered from persisted account performance rows.

Templates use ``{{PLACEHOLDER}}`` markers. PDF output is produced by handing the
rendered HTML to an external converter command such as ``wkhtmltopdf``.
"""

from collections.abc import Iterable, Mapping, Sequence
from datetime import date
from decimal import Decimal
import html
import logging
from pathlib import Path
import re
import shlex
import subprocess
from typing import Protocol

from adreports.entities import AccountPerformance, ReportEntity
from adreports.errors import ConfigError, ReportingError
from adreports.persistence import EntityPersister


logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Z0-9_]+)\}\}")


class PdfConverter(Protocol):
    def convert(self, html_path: Path, pdf_path: Path) -> None: ...


class CommandPdfConverter:
    def __init__(self, command: str) -> None:
        self.command = shlex.split(command)
        if not self.command:
            raise ConfigError("PDF converter command is empty")

    def convert(self, html_path: Path, pdf_path: Path) -> None:
        try:
            subprocess.run(
                [*self.command, str(html_path), str(pdf_path)],
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise ConfigError(f"PDF converter not found: {self.command[0]}") from exc
        except subprocess.CalledProcessError as exc:
            raise ReportingError(f"PDF conversion failed for {html_path}: {exc.stderr.strip()}") from exc


def render_template(template: str, placeholders: Mapping[str, object]) -> str:
    missing: set[str] = set()

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in placeholders:
            missing.add(name)
            return ""
        return str(placeholders[name])

    rendered = PLACEHOLDER_PATTERN.sub(replace, template)
    if missing:
        logger.warning("template placeholders without values", extra={"placeholders": sorted(missing)})
    return rendered


def _money(value: Decimal) -> str:
    return f"{value:,.2f}"


def account_placeholders(account_id: int, entities: Sequence[ReportEntity], date_from: date, date_to: date) -> dict[str, str]:
    rows: list[str] = []
    clicks = 0
    impressions = 0
    cost = Decimal("0")
    account_name = ""
    currency = ""

    for entity in entities:
        if not isinstance(entity, AccountPerformance):
            continue
        account_name = account_name or entity.account_name
        currency = currency or entity.currency_code
        clicks += entity.clicks
        impressions += entity.impressions
        cost += entity.cost

        period = entity.month.strftime("%B %Y") if entity.month else f"{entity.date_start} - {entity.date_end}"
        rows.append(
            "<tr>"
            f"<td>{html.escape(period)}</td>"
            f"<td>{entity.clicks:,}</td>"
            f"<td>{entity.impressions:,}</td>"
            f"<td>{entity.ctr}%</td>"
            f"<td>{_money(entity.cost)}</td>"
            f"<td>{_money(entity.average_cpc)}</td>"
            "</tr>"
        )

    return {
        "ACCOUNT_ID": str(account_id),
        "ACCOUNT_NAME": html.escape(account_name),
        "CURRENCY": html.escape(currency),
        "DATE_START": date_from.isoformat(),
        "DATE_END": date_to.isoformat(),
        "REPORT_ROWS": "\n".join(rows),
        "TOTAL_CLICKS": f"{clicks:,}",
        "TOTAL_IMPRESSIONS": f"{impressions:,}",
        "TOTAL_COST": _money(cost),
    }


def export_account_reports(
    persister: EntityPersister,
    account_ids: Iterable[int],
    date_from: date,
    date_to: date,
    template_path: str | Path,
    output_dir: str | Path,
    converter: PdfConverter | None = None,
) -> list[Path]:
    template_file = Path(template_path)
    if not template_file.is_file():
        raise ConfigError(f"HTML template not found: {template_file}")
    template = template_file.read_text(encoding="utf-8")

    output_root = Path(output_dir)
    output_root.mkdir(parents=True, exist_ok=True)

    written: list[Path] = []
    for account_id in account_ids:
        entities = persister.query(AccountPerformance.report_type, account_id, date_from, date_to)
        if not entities:
            logger.debug("no account performance data, skipping", extra={"account_id": account_id})
            continue

        html_path = output_root / f"ReportAccount{account_id}.html"
        html_path.write_text(
            render_template(template, account_placeholders(account_id, entities, date_from, date_to)),
            encoding="utf-8",
        )
        written.append(html_path)
        logger.debug("exported account summary", extra={"account_id": account_id, "path": str(html_path)})

        if converter is not None:
            pdf_path = output_root / f"ReportAccount{account_id}.pdf"
            converter.convert(html_path, pdf_path)
            written.append(pdf_path)

    logger.info("export finished", extra={"files": len(written)})
    return written
