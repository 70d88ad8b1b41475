"""Prompt templates for the categorization and location inference workers."""

from typing import Iterable, Mapping


SYSTEM_PROMPTS = {
    "categorize": """Eres un experto en contratación pública del Estado Peruano. Clasificas procesos publicados en el SEACE en UNA sola categoría.

## Reglas
1. Elige exactamente una clave de la lista de categorías disponibles
2. Responde solo con la clave, sin explicaciones
3. Prioriza el objeto de contratación y la descripción sobre el nombre de la entidad
4. Si ninguna categoría encaja claramente, usa la categoría más general de la lista""",

    "locate": """Eres un experto en geografía del Perú y en la organización territorial del Estado (gobiernos regionales, municipalidades provinciales y distritales).

## Tu tarea
Determina el departamento, la provincia y el distrito donde se ejecuta un proceso de contratación.

## Reglas
1. Busca primero nombres de lugares en la descripción del objeto
2. Si la descripción no basta, usa la jurisdicción de la entidad contratante
3. Usa null para cualquier nivel que no puedas determinar; nunca inventes
4. nivel_confianza: Alto si el lugar aparece literalmente, Medio si lo deduces de la entidad, Bajo si es una suposición
5. fuente_dato: Descripcion, Entidad o Inferencia según de dónde salió el dato""",

    "complete_location": """Eres un experto en geografía del Perú. Completas los niveles faltantes de una ubicación (departamento, provincia, distrito) a partir de los niveles conocidos.

## Reglas
1. No cambies los niveles que ya se conocen
2. Usa null si no estás seguro del nivel faltante
3. nivel_confianza: Alto solo si la relación territorial es inequívoca""",
}


def get_system_prompt(name: str) -> str:
    """Get a built-in system prompt by name."""
    if name not in SYSTEM_PROMPTS:
        raise KeyError(f"Prompt not found: {name}")
    return SYSTEM_PROMPTS[name]


def render_prompt(template: str, **context: str) -> str:
    """Substitute `{variable}` placeholders without touching other braces."""
    for key, value in context.items():
        template = template.replace(f"{{{key}}}", value)
    return template


CATEGORIZE_USER_TEMPLATE = """CATEGORÍAS DISPONIBLES:
{categories}

PROCESO:
- Entidad: {entity}
- Objeto de contratación: {object}
- Descripción: {description}
- Nomenclatura: {nomenclature}

Responde con la clave de la categoría."""


LOCATE_USER_TEMPLATE = """PROCESO:
- Entidad contratante: {entity}
- Descripción: {description}
- Ubicación registrada: departamento={department}, provincia={province}, distrito={district}

Devuelve departamento, provincia, distrito, nivel_confianza y fuente_dato."""


COMPLETE_LOCATION_USER_TEMPLATE = """UBICACIÓN CONOCIDA:
- Departamento: {department}
- Provincia: {province}
- Distrito: {district}

Entidad contratante: {entity}

Distritos ya confirmados en este lote (distrito -> provincia, departamento):
{known_districts}

Provincias ya confirmadas en este lote (provincia -> departamento):
{known_provinces}

Completa solo los niveles marcados como desconocidos."""


def _value(text) -> str:
    return str(text).strip() if text not in (None, "") else "desconocido"


def build_categorize_prompt(record, categories: Mapping[str, str]) -> str:
    listing = "\n".join(f"- {key}: {name}" for key, name in categories.items())
    return render_prompt(
        CATEGORIZE_USER_TEMPLATE,
        categories=listing,
        entity=_value(record.nombre_entidad),
        object=_value(record.objeto_contratacion),
        description=_value(record.descripcion_objeto),
        nomenclature=_value(record.nomenclatura),
    )


def build_locate_prompt(record) -> str:
    return render_prompt(
        LOCATE_USER_TEMPLATE,
        entity=_value(record.nombre_entidad),
        description=_value(record.descripcion_objeto),
        department=_value(record.departamento),
        province=_value(record.provincia),
        district=_value(record.distrito),
    )


def build_complete_location_prompt(
    entity,
    department,
    province,
    district,
    known_districts: Iterable[str],
    known_provinces: Iterable[str],
) -> str:
    return render_prompt(
        COMPLETE_LOCATION_USER_TEMPLATE,
        entity=_value(entity),
        department=_value(department),
        province=_value(province),
        district=_value(district),
        known_districts="\n".join(known_districts) or "ninguno",
        known_provinces="\n".join(known_provinces) or "ninguna",
    )
