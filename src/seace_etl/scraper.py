"""SEACE scraping worker: fetch search results and persist them as process records."""

import csv
import json
import logging
import random
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import requests
from bs4 import BeautifulSoup

from .models import OperationKind, ProcessRecord, ProcessSummary, ScrapeDetails, ScrapeParams
from .workers import ExternalServiceError, RunContext, Worker

logger = logging.getLogger(__name__)

MAX_PAGES = 50
MIN_DESCRIPTION_CHARS = 10
HEADER_ENTITY_LABELS = {"nombre o sigla de la entidad", "entidad"}
MISSING_VALUES = {"", "---", "n/a"}

ROW_SELECTOR = 'table[role="grid"] tbody tr[data-ri]'
FALLBACK_ROW_SELECTOR = 'table[class*="ui-datatable"] tbody tr'

# Column order of the public search results grid
COLUMNS = (
    "numero_orden",
    "nombre_entidad",
    "fecha_publicacion",
    "nomenclatura",
    "reiniciado_desde",
    "objeto_contratacion",
    "descripcion_objeto",
    "codigo_snip",
    "codigo_cui",
    "monto_referencial",
    "moneda",
    "version_seace",
)
MIN_COLUMNS = 7


def _compute_sleep_seconds(attempt: int, *, backoff_base: float, backoff_max: float) -> float:
    # Exponential backoff with jitter
    base = backoff_base * (2 ** max(0, attempt - 1))
    jitter = random.uniform(0, backoff_base)
    return min(backoff_max, base + jitter)


def http_get_with_retries(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Mapping[str, str | int]] = None,
    timeout: int = 30,
    max_attempts: int = 4,
    backoff_base: float = 0.5,
    backoff_max: float = 8.0,
    status_forcelist: Sequence[int] = (429, 500, 502, 503, 504),
    sleep: Callable[[float], None] = time.sleep,
) -> requests.Response:
    """
    GET with retries on connection errors and 429/5xx responses.

    Honors `Retry-After` when present. Raises the last network exception if
    every attempt fails.
    """
    attempt = 0
    last_exc: Optional[Exception] = None
    while attempt < max_attempts:
        attempt += 1
        try:
            resp = session.get(url, params=params, timeout=timeout)
            if resp.status_code in status_forcelist and attempt < max_attempts:
                retry_after = resp.headers.get("Retry-After")
                try:
                    sleep_sec = float(retry_after) if retry_after is not None else None
                except ValueError:
                    sleep_sec = None
                if sleep_sec is None:
                    sleep_sec = _compute_sleep_seconds(
                        attempt, backoff_base=backoff_base, backoff_max=backoff_max
                    )
                sleep(sleep_sec)
                continue
            return resp
        except (requests.exceptions.Timeout,
                requests.exceptions.ConnectionError,
                requests.exceptions.ChunkedEncodingError) as exc:
            last_exc = exc
            if attempt >= max_attempts:
                break
            sleep(_compute_sleep_seconds(attempt, backoff_base=backoff_base, backoff_max=backoff_max))

    assert last_exc is not None
    raise last_exc


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    cleaned = " ".join(text.split())
    return None if cleaned.lower() in MISSING_VALUES else cleaned


def parse_amount(text: Optional[str]) -> Optional[float]:
    """Parse amounts like '1.799.411,00', '1,799,411.00' or '1799411'."""
    value = _clean(text)
    if value is None:
        return None
    value = value.replace(" ", "").replace("S/", "").replace("US$", "")
    if "." in value and "," in value:
        if value.rfind(",") > value.rfind("."):
            value = value.replace(".", "").replace(",", ".")
        else:
            value = value.replace(",", "")
    elif "." in value:
        if value.count(".") > 1:
            value = value.replace(".", "")
    elif "," in value:
        value = value.replace(",", "") if value.count(",") > 1 else value.replace(",", ".")
    try:
        return float(value)
    except ValueError:
        logger.warning("Could not parse amount %r", text)
        return None


def parse_publication_date(text: Optional[str]) -> Optional[str]:
    """'dd/mm/yyyy HH:MM' -> 'yyyy-mm-dd HH:MM'; unknown shapes pass through."""
    value = _clean(text)
    if value is None:
        return None
    day_part, _, hour = value.partition(" ")
    pieces = day_part.split("/")
    if len(pieces) != 3 or not all(p.isdigit() for p in pieces):
        return value
    day, month, year = pieces
    formatted = f"{year}-{month.zfill(2)}-{day.zfill(2)}"
    return f"{formatted} {hour}" if hour else formatted


def parse_results_table(html: str, source_url: str, page: int) -> List[ProcessRecord]:
    """Extract valid process rows from one search results page."""
    soup = BeautifulSoup(html, "html.parser")
    rows = soup.select(ROW_SELECTOR) or soup.select(FALLBACK_ROW_SELECTOR)
    scraped_at = datetime.now().isoformat(timespec="seconds")
    records: List[ProcessRecord] = []

    for index, row in enumerate(rows):
        cells = row.find_all("td")
        if len(cells) < MIN_COLUMNS:
            continue
        values: Dict[str, Optional[str]] = {
            column: _clean(cells[position].get_text(" ")) if position < len(cells) else None
            for position, column in enumerate(COLUMNS)
        }
        order = values["numero_orden"] or ""
        entity = values["nombre_entidad"]
        description = values["descripcion_objeto"] or ""
        if not order.isdigit() or not entity or entity.lower() in HEADER_ENTITY_LABELS:
            logger.debug("Skipping non-data row %d on page %d", index, page)
            continue
        if len(description) < MIN_DESCRIPTION_CHARS:
            continue

        nomenclature = values["nomenclatura"]
        id_proceso = nomenclature or f"PROC-{page}-{order}"
        records.append(ProcessRecord(
            id_proceso=id_proceso,
            nombre_entidad=entity,
            fecha_publicacion=parse_publication_date(values["fecha_publicacion"]),
            nomenclatura=nomenclature,
            reiniciado_desde=values["reiniciado_desde"],
            objeto_contratacion=values["objeto_contratacion"],
            descripcion_objeto=description,
            numero_convocatoria=nomenclature,
            codigo_snip=values["codigo_snip"],
            codigo_cui=values["codigo_cui"],
            monto_referencial=parse_amount(values["monto_referencial"]),
            moneda=values["moneda"] or "Soles",
            version_seace=values["version_seace"] or "3",
            source_url=source_url,
            pagina_scraping=page,
            fecha_scraping=scraped_at,
        ))
    return records


def search_query(params: ScrapeParams, page: int) -> Dict[str, str | int]:
    query: Dict[str, str | int] = {"anio": params.anio, "page": page}
    optional = {
        "palabraClave": ",".join(params.keywords) if params.keywords else None,
        "objetoContratacion": params.objeto_contratacion,
        "departamento": params.departamento,
        "estadoProceso": params.estado_proceso,
        "entidad": params.entidad,
        "tipoProceso": params.tipo_proceso,
        "fechaDesde": params.fecha_desde,
        "fechaHasta": params.fecha_hasta,
    }
    query.update({key: value for key, value in optional.items() if value})
    return query


class ProcessSource(Protocol):
    def search(
        self,
        params: ScrapeParams,
        limit: int,
        on_page: Callable[[int, int], None],
    ) -> List[ProcessRecord]:
        ...


class SeaceHttpSource:
    """Pages through the public SEACE search with plain HTTP requests."""

    def __init__(
        self,
        search_url: str,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
        max_attempts: int = 4,
        max_pages: int = MAX_PAGES,
    ):
        self.search_url = search_url
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", "seace-etl/0.1 (+procurement research)")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.max_pages = max_pages

    def search(self, params: ScrapeParams, limit: int, on_page: Callable[[int, int], None]) -> List[ProcessRecord]:
        found: Dict[str, ProcessRecord] = {}
        for page in range(1, self.max_pages + 1):
            try:
                response = http_get_with_retries(
                    self.session,
                    self.search_url,
                    params=search_query(params, page),
                    timeout=self.timeout,
                    max_attempts=self.max_attempts,
                )
                response.raise_for_status()
            except requests.RequestException as exc:
                raise ExternalServiceError(f"SEACE search failed on page {page}: {exc}") from exc

            page_records = parse_results_table(response.text, response.url, page)
            new_records = [r for r in page_records if r.id_proceso not in found]
            for record in new_records:
                if len(found) >= limit:
                    break
                found[record.id_proceso] = record
            on_page(len(found), page)
            if not new_records or len(found) >= limit:
                break
        return list(found.values())


def export_results(records: Iterable[ProcessRecord], export_dir: Path, operation_id: str) -> List[str]:
    """Write the raw scrape to JSON and CSV files; returns their paths."""
    export_dir.mkdir(parents=True, exist_ok=True)
    rows = [record.model_dump() for record in records]
    stem = f"seace_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{operation_id[:8]}"

    json_path = export_dir / f"{stem}.json"
    json_path.write_text(json.dumps(rows, ensure_ascii=False, indent=2), encoding="utf-8")

    csv_path = export_dir / f"{stem}.csv"
    with csv_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(ProcessRecord.model_fields))
        writer.writeheader()
        writer.writerows(rows)
    return [str(json_path), str(csv_path)]


class Scraper(Worker):
    """Worker for `scrape` operations.

    Progress runs in two phases: extraction fills 0-50% and persistence
    50-100%. `max_processes` caps new inserts only; known processes keep
    being refreshed after the cap is reached.
    """

    kind = OperationKind.SCRAPE

    def __init__(self, *args, source: Optional[ProcessSource] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.source = source or SeaceHttpSource(
            self.settings.seace_search_url, timeout=self.settings.seace_timeout_seconds
        )

    def execute(self, ctx: RunContext, params: ScrapeParams) -> ScrapeDetails:
        limit = params.max_processes
        self.progress(ctx, 0, "Searching SEACE", step_total=2 * limit)

        def _on_page(found: int, page: int) -> None:
            self.narrate(ctx, f"Read results page {page}")
            self.progress(ctx, min(found, limit), f"Extracted {found} processes")

        results = self.source.search(params, limit, _on_page)
        total = len(results)
        self.progress(ctx, total, f"Saving {total} processes", step_total=2 * total)

        details = ScrapeDetails(total_found=total)
        for index, record in enumerate(results, start=1):
            delta = {"inserted": 0, "updated": 0, "errors": 0}
            try:
                if self.records.exists(record.id_proceso):
                    self.records.upsert(record)
                    details.updated += 1
                    details.updated_processes.append(ProcessSummary(id_proceso=record.id_proceso, entidad=record.nombre_entidad))
                    delta["updated"] = 1
                elif details.inserted < limit:
                    self.records.upsert(record)
                    details.inserted += 1
                    details.inserted_processes.append(ProcessSummary(id_proceso=record.id_proceso, entidad=record.nombre_entidad))
                    delta["inserted"] = 1
                else:
                    details.skipped += 1
            except sqlite3.Error as exc:
                logger.warning("Could not save process %s: %s", record.id_proceso, exc)
                details.errors += 1
                details.error_processes.append(ProcessSummary(
                    id_proceso=record.id_proceso, entidad=record.nombre_entidad, error=str(exc)[:500],
                ))
                delta["errors"] = 1
            self.progress(ctx, total + index, f"Saved {index} of {total} processes", counts_delta=delta)

        details.process_count = details.inserted + details.updated
        if self.settings.export_dir and results:
            details.export_files = export_results(results, self.settings.export_dir, ctx.operation_id)
        return details
