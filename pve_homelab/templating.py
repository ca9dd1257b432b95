import shlex
from pathlib import Path

import jinja2

TEMPLATES_DIR = Path(__file__).parent / "templates"


def _environment() -> jinja2.Environment:
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(str(TEMPLATES_DIR)),
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
    )
    env.filters["quote"] = shlex.quote
    return env


def render_template(template_name: str, **variables) -> str:
    return _environment().get_template(template_name).render(**variables)
