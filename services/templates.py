"""
Pre-built template snapshot registry.

Maps template names to Modal image ids built by modal_image.py. Snapshot
names match the template branch names (e.g. "database-vite-todo-template").
To add a template, run `modal run modal_image.py --template <name>` for each
environment and record the printed image ids here.
"""

import json
import logging
from dataclasses import dataclass
from typing import Literal, Optional

logger = logging.getLogger(__name__)

Environment = Literal["main", "dev"]

# Template used when nothing better can be inferred for a project
FALLBACK_TEMPLATE = "database-vite-template"

# Template used for imported codebases (no pre-configured files)
IMPORTED_PROJECT_TEMPLATE = "shipper-empty-bun-template"


@dataclass(frozen=True)
class TemplateSnapshot:
    """Snapshot image ids for one template."""
    image_id: str  # main/production environment
    description: str
    created_at: str
    version: str
    dev_image_id: Optional[str] = None


TEMPLATE_SNAPSHOTS: dict[str, TemplateSnapshot] = {
    "database-vite-template": TemplateSnapshot(
        image_id="im-BtQaOaga9rKaqJEQ06TJBP",
        dev_image_id="im-oOBbQUYV31mU1DAf7YvKug",
        description="database-vite-template template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-todo-template": TemplateSnapshot(
        image_id="im-WX5emDijDwwnj7Csp9yVCl",
        dev_image_id="im-r8do7zgmgsfQ6NAnZ16oeD",
        description="database-todo-template template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-calculator-template": TemplateSnapshot(
        image_id="im-dCKhTNXCYzwmrd7a0dEzXr",
        dev_image_id="im-lxSoOCM2qJ0khoFFmdWtFG",
        description="database-calculator-template template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-content-sharing-template": TemplateSnapshot(
        image_id="im-qA61sJrU8vEVk9pqFOa2rG",
        dev_image_id="im-VNaAvOwLiaRFuUJTbJGRhl",
        description="database-content-sharing-template template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-landing-page-template": TemplateSnapshot(
        image_id="im-3R2HBe39WKlLcTvUMsAwwq",
        dev_image_id="im-O3dBPWUERCMx1CffqIw6vL",
        description="database-landing-page-template template",
        created_at="2025-11-26",
        version="v12",
    ),
    "database-vite-tracker-template": TemplateSnapshot(
        image_id="im-bcowjZ8dSXzGSxX6nyyvQJ",
        dev_image_id="im-2ipi7zguRIrnWUod2KsjQ1",
        description="database-tracker-template template",
        created_at="2025-11-26",
        version="v12",
    ),
    # TanStack Start + Convex backend
    "tanstack-template": TemplateSnapshot(
        image_id="im-5KUREocgh08oG0OXAFxAwH",
        dev_image_id="im-p8X7Nediv8nUXPe2v3EKnU",
        description="tanstack-template template",
        created_at="2025-12-05",
        version="v1",
    ),
    "tanstack-todo-template": TemplateSnapshot(
        image_id="im-cScxJkjQTbp3QD3LbB4EwJ",
        dev_image_id="im-jyEJb0yi6NObfhCNan9ga3",
        description="tanstack-todo-template template",
        created_at="2025-12-05",
        version="v1",
    ),
    "tanstack-calculator-template": TemplateSnapshot(
        image_id="im-nwUjizbPWbH7ONCQVErJXJ",
        dev_image_id="im-vvnTwOZK0NNBzXJKk9PZYu",
        description="tanstack-calculator-template template",
        created_at="2025-12-05",
        version="v1",
    ),
    "tanstack-content-sharing-template": TemplateSnapshot(
        image_id="im-PXz9n5Z6igigrNZA0CNHTD",
        dev_image_id="im-iX59tOxvtbABTPlJ2FMUCp",
        description="tanstack-content-sharing-template template",
        created_at="2025-12-05",
        version="v1",
    ),
    "tanstack-landing-page-template": TemplateSnapshot(
        image_id="im-dzuOmn2e7ZoRKEUfyzlvMw",
        dev_image_id="im-zNxCC2V0RJ0cby2sBVYsY2",
        description="tanstack-landing-page-template template",
        created_at="2025-12-05",
        version="v1",
    ),
    "tanstack-tracker-template": TemplateSnapshot(
        image_id="im-6ukJpIxQCaLeX7bW9goiEZ",
        dev_image_id="im-ylYTUtMayhIBKwVuF3eEJX",
        description="tanstack-tracker-template template",
        created_at="2025-12-05",
        version="v1",
    ),
    IMPORTED_PROJECT_TEMPLATE: TemplateSnapshot(
        image_id="im-2Lo0DsRhOsNtTlYZ67qfGc",
        dev_image_id="im-rhJUt02flMOGZFpc2CZI1p",
        description="Empty template for imported projects",
        created_at="2025-12-13",
        version="v1",
    ),
}


def get_snapshot_image_id(
    template_name: str,
    environment: Environment = "main",
    registry: dict[str, TemplateSnapshot] | None = None,
) -> Optional[str]:
    """
    Get the snapshot image id for a template.

    In "dev" the dev image is preferred, falling back to the main image.
    Returns None for unknown templates.
    """
    snapshot = (registry if registry is not None else TEMPLATE_SNAPSHOTS).get(template_name)
    if not snapshot:
        return None
    if environment == "dev" and snapshot.dev_image_id:
        return snapshot.dev_image_id
    return snapshot.image_id or None


def has_snapshot(
    template_name: str,
    environment: Environment = "main",
    registry: dict[str, TemplateSnapshot] | None = None,
) -> bool:
    """True if the template has a snapshot built for exactly this environment."""
    snapshot = (registry if registry is not None else TEMPLATE_SNAPSHOTS).get(template_name)
    if not snapshot:
        return False
    if environment == "dev":
        return bool(snapshot.dev_image_id)
    return bool(snapshot.image_id)


def list_templates() -> list[str]:
    return sorted(TEMPLATE_SNAPSHOTS)


# =============================================================================
# Template inference
# =============================================================================

TEMPLATE_KEYWORD_MAP: list[tuple[str, tuple[str, ...]]] = [
    ("database-vite-todo-template", ("todo", "task", "tasks")),
    ("database-vite-calculator-template", ("calculator",)),
    ("database-vite-content-sharing-template", ("content", "share", "sharing")),
    ("database-vite-landing-page-template", ("landing", "marketing", "hero")),
    ("database-vite-tracker-template", ("tracker", "tracking", "habit", "budget")),
]


def infer_template_from_files(files: dict[str, str]) -> Optional[str]:
    """
    Guess which template a project was generated from.

    Looks at file names, package.json name/description/dependencies and
    README.md for the keywords in TEMPLATE_KEYWORD_MAP.
    """
    file_names_text = " ".join(files.keys()).lower()

    package_text = ""
    package_json = files.get("package.json")
    if package_json:
        try:
            pkg = json.loads(package_json)
            dependency_names = " ".join({
                **(pkg.get("dependencies") or {}),
                **(pkg.get("devDependencies") or {}),
            })
            package_text = f"{pkg.get('name', '')} {pkg.get('description', '')} {dependency_names}".lower()
        except (json.JSONDecodeError, AttributeError):
            package_text = package_json.lower()

    readme_text = (files.get("README.md") or "").lower()
    combined = f"{file_names_text} {package_text} {readme_text}"

    for template, keywords in TEMPLATE_KEYWORD_MAP:
        if any(keyword in combined for keyword in keywords):
            return template
    return None
