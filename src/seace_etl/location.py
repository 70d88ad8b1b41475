"""Two-pass geographic inference for procurement processes.

Pass 1 asks the model for each record's location and records every
trustworthy district-level answer in a run-scoped knowledge base. Pass 2 then
fills incomplete results from that knowledge base, without any external call,
and only falls back to a narrow completion request for districts the batch
has not seen.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from .categorizer import fold_text
from .models import (
    AICallSummary,
    Confidence,
    KnowledgeBaseSummary,
    LocationDetails,
    LocationGuess,
    LocationParams,
    OperationKind,
    ProcessRecord,
)
from .prompts import build_complete_location_prompt, build_locate_prompt, get_system_prompt
from .workers import RunContext, UnitFailed, Worker, percent

logger = logging.getLogger(__name__)

PLACEHOLDERS = {"", "no especificado", "por determinar", "no determinado", "error"}
NOT_A_PLACE = PLACEHOLDERS | {"nacional / multiregional", "nacional", "multiregional"}

KB_SAMPLE_DISTRICTS = 30
KB_SAMPLE_PROVINCES = 20

_NAME = r"([A-ZÁÉÍÓÚÑÜ][A-ZÁÉÍÓÚÑÜ ]*?)(?=\s*(?:[,.(\-]|$))"
ENTITY_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]", Confidence], ...] = (
    ("department", re.compile(r"GOBIERNO\s+REGIONAL\s+DE\s+" + _NAME, re.IGNORECASE), Confidence.HIGH),
    ("province", re.compile(r"MUNICIPALIDAD\s+PROVINCIAL\s+DE\s+" + _NAME, re.IGNORECASE), Confidence.MEDIUM),
    ("district", re.compile(r"MUNICIPALIDAD\s+DISTRITAL\s+DE\s+" + _NAME, re.IGNORECASE), Confidence.MEDIUM),
)


class ResolutionSource(str, Enum):
    """Where a location came from."""
    RECORDED = "Registrado"
    DESCRIPTION = "Descripcion"
    ENTITY = "Entidad"
    INFERENCE = "Inferencia"
    VALIDATED = "Validado"
    HEURISTIC = "Heuristica"
    KNOWLEDGE_BASE = "Base de Conocimiento"
    AI_COMPLETION = "IA - Completado"


def place_key(name: Optional[str]) -> str:
    """Normalized key for a locality name."""
    return fold_text(name)


def is_placeholder(value: Optional[str]) -> bool:
    return value is None or place_key(value) in PLACEHOLDERS


def is_place(value: Optional[str]) -> bool:
    """True for a real locality name, usable as knowledge."""
    return value is not None and place_key(value) not in NOT_A_PLACE


def capitalize_place(name: Optional[str]) -> Optional[str]:
    if not is_place(name):
        return None
    return " ".join(word.capitalize() for word in name.strip().split())


@dataclass(frozen=True)
class Location:
    department: Optional[str] = None
    province: Optional[str] = None
    district: Optional[str] = None
    confidence: Confidence = Confidence.LOW
    source: ResolutionSource = ResolutionSource.RECORDED

    @classmethod
    def from_record(cls, record: ProcessRecord) -> "Location":
        return cls(
            department=capitalize_place(record.departamento),
            province=capitalize_place(record.provincia),
            district=capitalize_place(record.distrito),
        )

    @property
    def is_complete(self) -> bool:
        return all(is_place(level) for level in (self.department, self.province, self.district))

    @property
    def is_empty(self) -> bool:
        return not any(is_place(level) for level in (self.department, self.province, self.district))

    def levels(self) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        return self.department, self.province, self.district

    def fill_missing(self, department=None, province=None, district=None, **changes) -> "Location":
        """Copy with only the unknown levels taken from the arguments."""
        return replace(
            self,
            department=self.department if is_place(self.department) else capitalize_place(department),
            province=self.province if is_place(self.province) else capitalize_place(province),
            district=self.district if is_place(self.district) else capitalize_place(district),
            **changes,
        )

    def overlay(self, department=None, province=None, district=None, **changes) -> "Location":
        """Copy where every known argument level replaces ours."""
        return replace(
            self,
            department=capitalize_place(department) or self.department,
            province=capitalize_place(province) or self.province,
            district=capitalize_place(district) or self.district,
            **changes,
        )


class KnowledgeBase:
    """
    Run-scoped district -> (province, department) and province -> department
    mappings learned during pass 1. The first mapping seen for a name wins;
    contradicting later answers are counted as conflicts and ignored.
    """

    def __init__(self):
        self.districts: Dict[str, Tuple[str, str, str]] = {}
        self.provinces: Dict[str, Tuple[str, str]] = {}
        self.districts_by_province: Dict[str, Set[str]] = {}
        self.conflicts = 0

    def record(self, location: Location) -> bool:
        """Learn from a trusted location. Returns True if anything new was stored."""
        department = capitalize_place(location.department)
        province = capitalize_place(location.province)
        district = capitalize_place(location.district)
        if not (department and province):
            return False

        learned = False
        province_key = place_key(province)
        known_province = self.provinces.get(province_key)
        if known_province is None:
            self.provinces[province_key] = (province, department)
            learned = True
        elif place_key(known_province[1]) != place_key(department):
            self.conflicts += 1
            return False

        if district:
            district_key = place_key(district)
            known_district = self.districts.get(district_key)
            if known_district is None:
                self.districts[district_key] = (district, province, department)
                self.districts_by_province.setdefault(province_key, set()).add(district_key)
                learned = True
            elif place_key(known_district[1]) != province_key:
                self.conflicts += 1
        return learned

    def lookup_district(self, name: Optional[str]) -> Optional[Tuple[str, str, str]]:
        return self.districts.get(place_key(name)) if is_place(name) else None

    def lookup_province(self, name: Optional[str]) -> Optional[Tuple[str, str]]:
        return self.provinces.get(place_key(name)) if is_place(name) else None

    def districts_of(self, province: Optional[str]) -> List[str]:
        keys = self.districts_by_province.get(place_key(province), set())
        return sorted(self.districts[key][0] for key in keys)

    def sample_districts(self, limit: int = KB_SAMPLE_DISTRICTS) -> List[str]:
        return [f"{d}: {p}, {dep}" for d, p, dep in list(self.districts.values())[:limit]]

    def sample_provinces(self, limit: int = KB_SAMPLE_PROVINCES) -> List[str]:
        return [f"{p}: {dep}" for p, dep in list(self.provinces.values())[:limit]]

    def summary(self) -> KnowledgeBaseSummary:
        return KnowledgeBaseSummary(
            districts=len(self.districts),
            provinces=len(self.provinces),
            conflicts=self.conflicts,
        )


def heuristic_from_entity(entity_name: Optional[str]) -> Optional[Location]:
    """Match well-known government entity name shapes."""
    text = (entity_name or "").strip()
    if not text:
        return None
    for level, pattern, confidence in ENTITY_PATTERNS:
        match = pattern.search(text)
        if match:
            name = capitalize_place(match.group(1))
            if name:
                return Location(**{level: name}, confidence=confidence, source=ResolutionSource.HEURISTIC)
    return None


def _agrees(existing: Location, candidate: Location) -> bool:
    """Every level already recorded matches the candidate, and at least one does."""
    compared = 0
    for known, proposed in zip(existing.levels(), candidate.levels()):
        if is_place(known):
            if place_key(known) != place_key(proposed):
                return False
            compared += 1
    return compared > 0


@dataclass
class EngineCounters:
    used_ai: int = 0
    used_fallback: int = 0
    updated_existing: int = 0
    completed_from_kb: int = 0
    completed_with_ai: int = 0
    errors: int = 0
    persisted: int = 0
    ai_calls_pass_one: int = 0
    ai_calls_pass_two: int = 0


Infer = Callable[[ProcessRecord], LocationGuess]
Complete = Callable[[ProcessRecord, Location, KnowledgeBase], LocationGuess]
Persist = Callable[[ProcessRecord, Location], bool]
Step = Callable[[int, str, Dict[str, int]], None]


@dataclass
class LocationInferenceEngine:
    """Runs both passes over a batch. External effects are injected as callables."""

    infer: Infer
    persist: Persist
    complete: Optional[Complete] = None
    on_step: Optional[Step] = None
    kb: KnowledgeBase = field(default_factory=KnowledgeBase)
    counters: EngineCounters = field(default_factory=EngineCounters)

    def _step(self, step: int, message: str, delta: Optional[Dict[str, int]] = None) -> None:
        if self.on_step:
            self.on_step(step, message, delta or {})

    # Pass 1

    def resolve(self, record: ProcessRecord) -> Tuple[Location, bool]:
        """Pass-1 resolution of one record. Returns (location, unit_failed)."""
        existing = Location.from_record(record)
        guess: Optional[LocationGuess] = None
        failed = False
        try:
            self.counters.ai_calls_pass_one += 1
            guess = self.infer(record)
        except UnitFailed as exc:
            logger.warning("Location inference failed for %s: %s", record.id_proceso, exc)
            failed = True

        if guess is not None and guess.nivel_confianza != Confidence.LOW and (
            is_place(guess.departamento) or is_place(guess.provincia) or is_place(guess.distrito)
        ):
            candidate = Location(
                department=capitalize_place(guess.departamento),
                province=capitalize_place(guess.provincia),
                district=capitalize_place(guess.distrito),
                confidence=guess.nivel_confianza,
                source=ResolutionSource(guess.fuente_dato),
            )
            validated = _agrees(existing, candidate)
            location = existing.overlay(*candidate.levels(), confidence=candidate.confidence, source=candidate.source)
            if validated:
                location = replace(location, source=ResolutionSource.VALIDATED)
            if candidate.district and (candidate.confidence == Confidence.HIGH or validated):
                self.kb.record(location)
            self.counters.used_ai += 1
        else:
            heuristic = heuristic_from_entity(record.nombre_entidad)
            if heuristic is not None:
                location = existing.fill_missing(
                    *heuristic.levels(), confidence=heuristic.confidence, source=ResolutionSource.HEURISTIC
                )
            else:
                location = existing
            self.counters.used_fallback += 1

        if not existing.is_empty and location.levels() != existing.levels():
            self.counters.updated_existing += 1
        return location, failed

    # Pass 2

    def complete_from_kb(self, location: Location) -> Optional[Location]:
        """Fill unknown levels from the knowledge base; None if nothing changed."""
        if location.is_complete:
            return None
        filled = location
        known_district = self.kb.lookup_district(location.district)
        if known_district:
            _, province, department = known_district
            filled = filled.fill_missing(department=department, province=province)
        known_province = self.kb.lookup_province(filled.province)
        if known_province:
            filled = filled.fill_missing(department=known_province[1])
        if filled.levels() == location.levels():
            return None
        return replace(filled, confidence=Confidence.HIGH, source=ResolutionSource.KNOWLEDGE_BASE)

    def improve(self, record: ProcessRecord, location: Location) -> Tuple[Location, bool]:
        """Pass-2 completion of one partial result. Returns (location, unit_failed)."""
        if location.is_complete or location.is_empty:
            return location, False

        from_kb = self.complete_from_kb(location)
        if from_kb is not None:
            self.counters.completed_from_kb += 1
            return from_kb, False

        if self.complete is None or self.kb.lookup_district(location.district):
            return location, False
        try:
            self.counters.ai_calls_pass_two += 1
            guess = self.complete(record, location, self.kb)
        except UnitFailed as exc:
            logger.warning("Location completion failed for %s: %s", record.id_proceso, exc)
            return location, True
        if guess.nivel_confianza == Confidence.LOW:
            return location, False
        completed = location.fill_missing(
            guess.departamento, guess.provincia, guess.distrito,
            confidence=guess.nivel_confianza, source=ResolutionSource.AI_COMPLETION,
        )
        if completed.levels() != location.levels():
            self.counters.completed_with_ai += 1
            return completed, False
        return location, False

    def run(self, records: List[ProcessRecord]) -> List[Location]:
        total = len(records)
        resolved: List[Location] = []

        for index, record in enumerate(records, start=1):
            location, failed = self.resolve(record)
            resolved.append(location)
            errors = 1 if failed else 0
            self.counters.errors += errors
            self._step(index, f"Pass 1: inferring location {index} of {total}", {"errors": errors})

        for index, (record, location) in enumerate(zip(records, resolved), start=1):
            improved, failed = self.improve(record, location)
            resolved[index - 1] = improved
            errors = 1 if failed else 0
            self.counters.errors += errors
            updated = 1 if self.persist(record, improved) else 0
            self.counters.persisted += updated
            self._step(
                total + index,
                f"Pass 2: completing location {index} of {total}",
                {"errors": errors, "updated": updated},
            )
        return resolved


class LocationInferrer(Worker):
    """Worker for `infer_location` operations."""

    kind = OperationKind.INFER_LOCATION

    def _infer(self, ctx: RunContext, record: ProcessRecord) -> LocationGuess:
        system_prompt = get_system_prompt("locate")
        user_prompt = build_locate_prompt(record)
        return self.call_ai(
            ctx,
            lambda client: client.generate(
                response_model=LocationGuess,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
            ),
        )

    def _complete(self, ctx: RunContext, record: ProcessRecord, location: Location, kb: KnowledgeBase) -> LocationGuess:
        system_prompt = get_system_prompt("complete_location")
        user_prompt = build_complete_location_prompt(
            entity=record.nombre_entidad,
            department=location.department,
            province=location.province,
            district=location.district,
            known_districts=kb.sample_districts(),
            known_provinces=kb.sample_provinces(),
        )
        return self.call_ai(
            ctx,
            lambda client: client.generate(
                response_model=LocationGuess,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
            ),
        )

    def _persist(self, record: ProcessRecord, location: Location) -> bool:
        changes = {}
        for column, value in zip(("departamento", "provincia", "distrito"), location.levels()):
            if is_place(value) and place_key(value) != place_key(getattr(record, column)):
                changes[column] = value
        if not changes:
            return False
        return self.records.update_fields(record.id_proceso, **changes)

    def execute(self, ctx: RunContext, params: LocationParams) -> LocationDetails:
        total_pending = self.records.count_incomplete_location()
        targets = self.records.find_incomplete_location(params.limit)
        total = len(targets)
        self.progress(ctx, 0, f"Inferring location for {total} processes", step_total=2 * total)

        engine = LocationInferenceEngine(
            infer=lambda record: self._infer(ctx, record),
            complete=(lambda record, location, kb: self._complete(ctx, record, location, kb))
            if params.complete_with_ai else None,
            persist=self._persist,
            on_step=lambda step, message, delta: self.progress(ctx, step, message, counts_delta=delta),
        )
        engine.run(targets)
        counters = engine.counters
        improved = counters.completed_from_kb + counters.completed_with_ai
        logger.info(
            "Location run %s: %d targets, %d from knowledge base, %d completed by AI",
            ctx.operation_id, total, counters.completed_from_kb, counters.completed_with_ai,
        )

        return LocationDetails(
            updated=counters.persisted,
            errors=counters.errors,
            process_count=total,
            used_ai=counters.used_ai,
            used_fallback=counters.used_fallback,
            updated_existing=counters.updated_existing,
            improved=improved,
            completed_from_kb=counters.completed_from_kb,
            completed_with_ai=counters.completed_with_ai,
            total_pending=total_pending,
            kb_completion_percentage=percent(counters.completed_from_kb, total),
            improved_percentage=percent(improved, total),
            knowledge_base=engine.kb.summary(),
            ai_calls=AICallSummary(pass_one=counters.ai_calls_pass_one, pass_two=counters.ai_calls_pass_two),
        )
