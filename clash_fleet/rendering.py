from __future__ import annotations

import shlex
from typing import Any

from jinja2 import Environment, PackageLoader, StrictUndefined

_ENV = Environment(
    loader=PackageLoader("clash_fleet", "templates"),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)
_ENV.filters["shquote"] = lambda value: shlex.quote(str(value))


def render_template(name: str, **context: Any) -> str:
    """Render a template bundled under `clash_fleet/templates`. No side effects."""

    return _ENV.get_template(name).render(**context)
