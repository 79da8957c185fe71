from __future__ import annotations

import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.automation.extensions import db
from backend.automation.models import Workflow
from backend.automation.workflow.templates import PRICE_REPLY, iter_templates
from backend.scripts.seed import seed


def test_seed_is_idempotent(app):
    assert seed("org-seed") == (3, 0)
    assert seed("org-seed") == (0, 0)

    workflows = Workflow.query.filter_by(organization_id="org-seed").all()
    assert sorted(workflow.name for workflow in workflows) == sorted(t.name for t in iter_templates())
    assert all(workflow.is_active for workflow in workflows)


def test_seed_restores_edited_templates(app):
    seed("org-seed")
    workflow = Workflow.query.filter_by(organization_id="org-seed", name=PRICE_REPLY.name).one()
    workflow.graph = {"nodes": [], "edges": []}
    db.session.commit()

    assert seed("org-seed") == (0, 1)
    db.session.refresh(workflow)
    assert workflow.graph == PRICE_REPLY.definition()
