"""Tests for prompt management."""

import sys
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from seace_etl.prompts import (
    build_categorize_prompt,
    build_complete_location_prompt,
    build_locate_prompt,
    get_system_prompt,
    render_prompt,
)
from seace_etl.models import ProcessRecord


class TestSystemPrompts:
    """Tests for built-in system prompts."""

    @pytest.mark.parametrize("name", ["categorize", "locate", "complete_location"])
    def test_known_prompts_exist(self, name):
        assert len(get_system_prompt(name)) > 0

    def test_unknown_prompt_raises(self):
        with pytest.raises(KeyError):
            get_system_prompt("nonexistent_prompt_xyz")


def test_render_prompt_leaves_other_braces_alone():
    rendered = render_prompt('{"a": 1} {name}', name="SEACE")
    assert rendered == '{"a": 1} SEACE'


def test_categorize_prompt_lists_catalog_and_record():
    record = ProcessRecord(
        id_proceso="P-1",
        nombre_entidad="MUNICIPALIDAD DISTRITAL DE YURA",
        objeto_contratacion="Obra",
        descripcion_objeto="Mejoramiento de pistas y veredas",
    )
    prompt = build_categorize_prompt(record, {"Obra": "Obras publicas", "Servicio": "Servicios"})
    assert "- Obra: Obras publicas" in prompt
    assert "MUNICIPALIDAD DISTRITAL DE YURA" in prompt
    assert "Nomenclatura: desconocido" in prompt


def test_locate_prompt_marks_unknown_levels():
    record = ProcessRecord(id_proceso="P-1", nombre_entidad="GOBIERNO REGIONAL DE PUNO", departamento="Puno")
    prompt = build_locate_prompt(record)
    assert "departamento=Puno, provincia=desconocido, distrito=desconocido" in prompt


def test_complete_location_prompt_includes_batch_knowledge():
    prompt = build_complete_location_prompt(
        "MUNICIPALIDAD DISTRITAL DE SOCABAYA", None, None, "Socabaya",
        known_districts=["Socabaya -> Arequipa, Arequipa"],
        known_provinces=[],
    )
    assert "Socabaya -> Arequipa, Arequipa" in prompt
    assert "ninguna" in prompt
    assert "Departamento: desconocido" in prompt
