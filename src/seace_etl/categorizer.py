"""Categorization worker: assigns each uncategorized process one project category."""

import logging
import re
import unicodedata
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from .models import CategorizeDetails, CategorizeParams, CategoryDecision, OperationKind, ProcessRecord
from .prompts import build_categorize_prompt, get_system_prompt
from .workers import RunContext, UnitFailed, Worker, percent

logger = logging.getLogger(__name__)

KEYWORD_MIN_MATCHES = 2
FALLBACK_KEY = "OTROS"


@dataclass(frozen=True)
class Category:
    key: str
    name: str
    keywords: Tuple[str, ...] = ()


DEFAULT_CATEGORIES: Dict[str, Category] = {
    category.key: category
    for category in (
        Category("TECNOLOGIA", "Tecnología e Informática", (
            "software", "sistema", "desarrollo", "aplicación", "app", "web", "móvil",
            "base de datos", "servidor", "cloud", "tecnología", "informática", "computadora",
            "equipo de cómputo", "licencia", "microsoft", "oracle", "sap", "erp", "crm",
            "ciberseguridad", "backup", "red", "wifi", "telecomunicaciones", "programación",
            "digital", "electrónico",
        )),
        Category("CONSTRUCCION", "Construcción e Infraestructura", (
            "construcción", "obra", "infraestructura", "edificación", "carretera", "puente",
            "túnel", "hospital", "escuela", "mejoramiento", "ampliación", "remodelación",
            "rehabilitación", "saneamiento", "agua", "desagüe", "alcantarillado", "pista",
            "vereda", "muro", "canal", "reservorio",
        )),
        Category("SERVICIOS_BASICOS", "Servicios Básicos", (
            "electricidad", "energía", "luz", "alumbrado", "agua potable", "tratamiento de agua",
            "residuos sólidos", "limpieza", "mantenimiento", "seguridad", "vigilancia",
            "jardinería", "fumigación", "desinfección",
        )),
        Category("SALUD", "Salud y Equipamiento Médico", (
            "salud", "médico", "hospital", "clínica", "posta", "equipamiento médico",
            "medicamentos", "insumos médicos", "ambulancia", "rayos x", "ecógrafo",
            "laboratorio", "quirófano", "camilla", "enfermería",
        )),
        Category("EDUCACION", "Educación y Capacitación", (
            "educación", "capacitación", "formación", "enseñanza", "colegio",
            "institución educativa", "universidad", "material educativo", "mobiliario escolar",
            "aula", "pizarra", "carpeta", "biblioteca", "laboratorio educativo",
        )),
        Category("CONSULTORIA", "Consultoría y Asesoría", (
            "consultoría", "asesoría", "estudio", "supervisión", "evaluación", "diagnóstico",
            "plan", "estrategia", "servicio de consultoría", "servicio no personal",
            "auditoría", "inspección", "peritaje",
        )),
        Category("BIENES", "Adquisición de Bienes", (
            "adquisición", "compra", "suministro", "provisión", "mobiliario", "equipamiento",
            "vehículo", "maquinaria", "útiles de oficina", "papelería", "equipos",
            "herramientas", "materiales",
        )),
        Category("TRANSPORTE", "Transporte y Logística", (
            "transporte", "logística", "vehículo", "camión", "movilidad", "combustible",
            "mantenimiento vehicular", "repuestos", "neumáticos", "flota", "carga",
        )),
        Category(FALLBACK_KEY, "Otros Servicios"),
    )
}

DEFAULT_CATEGORY = "BIENES"


def fold_text(text: Optional[str]) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


def categorize_by_keywords(record: ProcessRecord, catalog: Mapping[str, Category]) -> Optional[str]:
    """Best keyword match, or None when no category reaches two hits."""
    text = fold_text(" ".join(
        part or "" for part in (record.objeto_contratacion, record.descripcion_objeto, record.nomenclatura)
    ))
    best_key: Optional[str] = None
    best_hits = 0
    for key, category in catalog.items():
        hits = sum(1 for keyword in category.keywords if fold_text(keyword) in text)
        if hits > best_hits:
            best_key, best_hits = key, hits
    return best_key if best_hits >= KEYWORD_MIN_MATCHES else None


def match_category(answer: Optional[str], catalog: Mapping[str, Category]) -> Optional[str]:
    """Map a free-form AI answer onto a catalog key."""
    cleaned = re.sub(r"[^A-Z_]", "", fold_text(answer).upper().replace(" ", "_"))
    if not cleaned:
        return None
    for key in catalog:
        if re.sub(r"[^A-Z_]", "", fold_text(key).upper().replace(" ", "_")) == cleaned:
            return key
    return None


class Categorizer(Worker):
    """Worker for `categorize` operations."""

    kind = OperationKind.CATEGORIZE

    def __init__(self, *args, catalog: Optional[Mapping[str, Category]] = None,
                 default_category: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.catalog: Dict[str, Category] = dict(catalog or DEFAULT_CATEGORIES)
        if not self.catalog:
            raise ValueError("Category catalog must not be empty")
        if default_category is None:
            default_category = DEFAULT_CATEGORY if DEFAULT_CATEGORY in self.catalog else next(iter(self.catalog))
        if default_category not in self.catalog:
            raise ValueError(f"Default category '{default_category}' is not in the catalog")
        self.default_category = default_category

    def _decide(self, ctx: RunContext, record: ProcessRecord) -> Tuple[str, bool]:
        """Return (category, decided_by_ai). Raises UnitFailed on provider failure."""
        system_prompt = get_system_prompt("categorize")
        user_prompt = build_categorize_prompt(record, {k: c.name for k, c in self.catalog.items()})
        decision = self.call_ai(
            ctx,
            lambda client: client.generate(
                response_model=CategoryDecision,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
            ),
        )
        category = match_category(decision.categoria, self.catalog)
        if category is not None and category != FALLBACK_KEY:
            return category, True

        logger.debug("AI answer %r not usable for %s, using keywords", decision.categoria, record.id_proceso)
        return categorize_by_keywords(record, self.catalog) or self.default_category, False

    def execute(self, ctx: RunContext, params: CategorizeParams) -> CategorizeDetails:
        total_pending = self.records.count_uncategorized()
        targets = self.records.find_uncategorized(params.limit)
        total = len(targets)
        self.progress(ctx, 0, f"Categorizing {total} processes", step_total=total)

        distribution: Counter = Counter()
        used_ai = used_keywords = updated = errors = 0

        for index, record in enumerate(targets, start=1):
            delta = {"updated": 0, "errors": 0}
            try:
                category, by_ai = self._decide(ctx, record)
            except UnitFailed as exc:
                logger.warning("Categorization failed for %s: %s", record.id_proceso, exc)
                errors += 1
                delta["errors"] = 1
                category, by_ai = categorize_by_keywords(record, self.catalog), False

            if category:
                self.records.update_fields(record.id_proceso, categoria_proyecto=category)
                distribution[category] += 1
                updated += 1
                delta["updated"] = 1
                if by_ai:
                    used_ai += 1
                else:
                    used_keywords += 1

            self.progress(ctx, index, f"Categorizing process {index} of {total}", counts_delta=delta)

        return CategorizeDetails(
            updated=updated,
            errors=errors,
            process_count=total,
            category_distribution=dict(distribution),
            category_percentages={key: percent(value, updated) for key, value in distribution.items()},
            used_ai=used_ai,
            used_keywords=used_keywords,
            total_uncategorized=total_pending,
        )
