"""Seed the database with the example workflows for an organization."""
from __future__ import annotations

import os
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.automation import create_app
from backend.automation.extensions import db
from backend.automation.models.workflow import Workflow
from backend.automation.utils.jsonfield import dump_json
from backend.automation.workflow.definition import validate_graph
from backend.automation.workflow.templates import WorkflowTemplate, iter_templates

DEFAULT_ORGANIZATION = os.getenv("SEED_ORGANIZATION_ID", "demo")


def ensure_template(organization_id: str, template: WorkflowTemplate) -> tuple[bool, bool]:
    """Create or update a workflow from the template definition."""

    errors = validate_graph(template.graph)
    if errors:
        raise RuntimeError(f"Template {template.name!r} is invalid: {'; '.join(errors)}")

    graph_json = dump_json(template.definition())
    config_json = dump_json(template.trigger_config)
    created = False
    updated = False

    workflow = Workflow.query.filter_by(organization_id=organization_id, name=template.name).first()
    if workflow is None:
        workflow = Workflow(
            organization_id=organization_id,
            name=template.name,
            trigger_type=template.trigger_type,
            trigger_config_json=config_json,
            graph_json=graph_json,
            is_active=True,
        )
        db.session.add(workflow)
        created = True
    elif (
        workflow.trigger_type != template.trigger_type
        or workflow.trigger_config_json != config_json
        or workflow.graph_json != graph_json
    ):
        workflow.trigger_type = template.trigger_type
        workflow.trigger_config_json = config_json
        workflow.graph_json = graph_json
        updated = True
    return created, updated


def seed(organization_id: str = DEFAULT_ORGANIZATION) -> tuple[int, int]:
    created_count = 0
    updated_count = 0
    for template in iter_templates():
        created, updated = ensure_template(organization_id, template)
        created_count += int(created)
        updated_count += int(updated)
    db.session.commit()
    return created_count, updated_count


def main() -> None:
    app = create_app()
    with app.app_context():
        created, updated = seed()
        print(
            "Seed completed",
            f"organization={DEFAULT_ORGANIZATION}",
            f"workflows created={created}",
            f"workflows updated={updated}",
        )


if __name__ == "__main__":
    main()
