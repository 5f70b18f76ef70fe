"""
Seed Roles & Permissions — 12 system roles, the permission catalog and the
default supplier workflow.

Usage:
    python scripts/seed_roles.py              # Uses development DB
    python scripts/seed_roles.py --env production   # Uses production DB

This script is idempotent — safe to run multiple times.
"""

import argparse
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from procure import create_app  # noqa: E402
from procure.models import db  # noqa: E402
from procure.models.auth import Permission, Role  # noqa: E402
from procure.models.workflow import ApprovalLevel, WorkflowDefinition  # noqa: E402
from procure.services.permission_service import invalidate_all_cache  # noqa: E402
from procure.services.workflow_definition_service import find_default  # noqa: E402

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════
# PERMISSIONS: (resource, action, scope, description)
# ═══════════════════════════════════════════════════════════════
PERMISSIONS = [
    # Supplier
    ("supplier", "create", "all", "Create new suppliers"),
    ("supplier", "read", "all", "View supplier information"),
    ("supplier", "update", "all", "Update supplier information"),
    ("supplier", "delete", "all", "Delete suppliers"),
    ("supplier", "submit", "own", "Submit suppliers for onboarding approval"),
    ("supplier", "approve", "all", "Approve new suppliers"),
    ("supplier", "reject", "all", "Reject new suppliers"),
    ("supplier", "recall", "own", "Recall own supplier submissions"),
    ("supplier", "export", "all", "Export supplier list"),
    # Material
    ("material", "create", "all", "Create new materials"),
    ("material", "read", "all", "View material information"),
    ("material", "update", "all", "Update material information"),
    ("material", "delete", "all", "Delete materials"),
    ("material", "export", "all", "Export material list"),
    # Quotation
    ("material_quotation", "create", "own", "Create quotations"),
    ("material_quotation", "read", "all", "View quotations"),
    ("material_quotation", "update", "own", "Update own quotations"),
    ("material_quotation", "submit", "own", "Submit quotations for approval"),
    ("material_quotation", "approve", "all", "Approve quotations"),
    ("material_quotation", "reject", "all", "Reject quotations"),
    ("material_quotation", "recall", "own", "Recall own quotations"),
    # Purchase order
    ("purchase_order", "create", "own", "Create purchase orders"),
    ("purchase_order", "read", "all", "View purchase orders"),
    ("purchase_order", "update", "own", "Update own purchase orders"),
    ("purchase_order", "submit", "own", "Submit POs for approval"),
    ("purchase_order", "approve", "all", "Approve purchase orders"),
    ("purchase_order", "reject", "all", "Reject purchase orders"),
    ("purchase_order", "recall", "own", "Recall own purchase orders"),
    ("purchase_order", "export", "all", "Export PO list"),
    # Pre-payment
    ("pre_payment", "create", "own", "Create pre-payment applications"),
    ("pre_payment", "read", "all", "View pre-payment applications"),
    ("pre_payment", "submit", "own", "Submit pre-payments for approval"),
    ("pre_payment", "approve", "all", "Approve pre-payments"),
    ("pre_payment", "reject", "all", "Reject pre-payments"),
    ("pre_payment", "recall", "own", "Recall own pre-payments"),
    # MRP
    ("mrp", "create", "all", "Run MRP calculation"),
    ("mrp", "read", "all", "View MRP results"),
    ("mrp", "update", "all", "Update MRP status"),
    ("mrp", "export", "all", "Export MRP list"),
    # Workflow definitions / instances
    ("workflow", "create", "all", "Create workflow definitions"),
    ("workflow", "read", "all", "View workflow definitions and instances"),
    ("workflow", "update", "all", "Update workflow definitions"),
    ("workflow", "delete", "all", "Delete workflow definitions"),
    # Role and permission management
    ("role", "create", "all", "Create roles"),
    ("role", "read", "all", "View roles"),
    ("role", "update", "all", "Update roles"),
    ("role", "delete", "all", "Delete roles"),
    ("permission", "create", "all", "Create permissions"),
    ("permission", "read", "all", "View permissions"),
    ("permission", "update", "all", "Update permission conditions"),
    ("permission", "delete", "all", "Delete permissions"),
    # User directory
    ("user", "create", "all", "Create users"),
    ("user", "read", "all", "View users"),
    ("user", "update", "all", "Update users"),
    ("user", "delete", "all", "Delete users"),
    # Audit log
    ("audit_log", "read", "all", "View audit logs"),
    ("audit_log", "export", "all", "Export audit logs"),
    # Goods receipt
    ("goods_receipt", "create", "all", "Record goods receipt"),
    ("goods_receipt", "read", "all", "View goods receipts"),
]


def _pick(resources=None, actions=None):
    """Permission keys filtered by resource and/or action."""
    return [
        f"{r}:{a}:{s}" for r, a, s, _ in PERMISSIONS
        if (resources is None or r in resources) and (actions is None or a in actions)
    ]


# ═══════════════════════════════════════════════════════════════
# ROLES: 12 system roles with permission assignments
# ═══════════════════════════════════════════════════════════════
ROLES = {
    "system_administrator": {
        "display_name_zh": "系统管理员",
        "display_name_en": "System Administrator",
        "description": "Full system access for configuration and user management",
        "grants_full_access": True,
        "permissions": _pick(),
    },
    "general_manager": {
        "display_name_zh": "总经理",
        "display_name_en": "General Manager",
        "description": "Executive oversight and final approval authority",
        "permissions": _pick(actions=("read", "approve", "reject", "export")),
    },
    "procurement_manager": {
        "display_name_zh": "采购经理",
        "display_name_en": "Procurement Manager",
        "description": "Procurement oversight, team management, and approval authority",
        "permissions": (
            _pick(resources=("supplier", "material", "material_quotation", "purchase_order", "mrp"))
            + _pick(resources=("user", "workflow"), actions=("read",))
        ),
    },
    "cost_center": {
        "display_name_zh": "成本中心",
        "display_name_en": "Cost Center",
        "description": "Cost analysis, price review, and budget validation",
        "permissions": _pick(
            resources=("supplier", "material_quotation", "purchase_order", "mrp"),
            actions=("read", "approve", "reject", "export"),
        ),
    },
    "finance_director": {
        "display_name_zh": "财务总监",
        "display_name_en": "Finance Director",
        "description": "Financial oversight and payment approval authority",
        "permissions": _pick(
            resources=("pre_payment", "purchase_order"),
            actions=("read", "approve", "reject", "export"),
        ),
    },
    "finance_personnel": {
        "display_name_zh": "财务人员",
        "display_name_en": "Finance Personnel",
        "description": "Payment processing and financial tracking",
        "permissions": _pick(resources=("pre_payment", "purchase_order"), actions=("read", "export")),
    },
    "purchaser": {
        "display_name_zh": "采购员",
        "display_name_en": "Purchaser",
        "description": "Create purchase orders, quotations, and manage procurement",
        "permissions": _pick(
            resources=("material_quotation", "purchase_order", "pre_payment", "supplier", "material", "mrp"),
            actions=("create", "read", "update", "submit", "recall"),
        ),
    },
    "data_entry_personnel": {
        "display_name_zh": "数据录入人员",
        "display_name_en": "Data Entry Personnel",
        "description": "Master data entry and maintenance",
        "permissions": (
            _pick(resources=("supplier", "material"), actions=("create", "read", "update"))
            + _pick(resources=("supplier",), actions=("submit", "approve", "reject", "recall"))
        ),
    },
    "mrp_planner": {
        "display_name_zh": "MRP计划员",
        "display_name_en": "MRP Planner",
        "description": "MRP execution and requirement planning",
        "permissions": _pick(resources=("mrp", "material", "supplier", "purchase_order")),
    },
    "warehouse_personnel": {
        "display_name_zh": "仓库人员",
        "display_name_en": "Warehouse Personnel",
        "description": "Goods receipt and inventory management",
        "permissions": _pick(
            resources=("goods_receipt", "purchase_order", "material"),
            actions=("create", "read", "update"),
        ),
    },
    "engineering": {
        "display_name_zh": "工程部",
        "display_name_en": "Engineering",
        "description": "Material specification and technical review",
        "permissions": _pick(resources=("material",), actions=("create", "read", "update")),
    },
    "auditor": {
        "display_name_zh": "审计员",
        "display_name_en": "Auditor",
        "description": "Audit review and compliance checking",
        "permissions": sorted(set(_pick(actions=("read",)) + _pick(resources=("audit_log",)))),
    },
}

DEFAULT_SUPPLIER_WORKFLOW = {
    "workflow_name": "supplier_onboarding_default",
    "display_name_zh": "供应商准入审批流程",
    "display_name_en": "Supplier Onboarding Approval",
    "description": "Default single-level onboarding approval",
    "document_type": "supplier",
    "level_name": "Procurement Manager Approval",
    "approver_roles": ("procurement_manager", "system_administrator"),
}


def seed_permissions():
    """Create missing catalog permissions (system, non-deletable)."""
    created = 0
    for resource, action, scope, description in PERMISSIONS:
        existing = Permission.query.filter_by(resource=resource, action=action, scope=scope).first()
        if existing is None:
            db.session.add(Permission(
                resource=resource,
                action=action,
                scope=scope,
                description=description,
                is_system_permission=True,
            ))
            created += 1
        else:
            existing.description = description
            existing.is_system_permission = True
            if existing.removed:
                existing.restore()
    db.session.commit()
    logger.info("Permissions: %s created, %s already existed", created, len(PERMISSIONS) - created)
    return created


def seed_roles():
    """Create or update the 12 system roles with their permission assignments."""
    by_key = {p.permission_key: p for p in Permission.query_active().all()}
    created = 0
    for role_name, cfg in ROLES.items():
        role = Role.query.filter_by(name=role_name).first()
        if role is None:
            role = Role(name=role_name, is_system_role=True)
            db.session.add(role)
            created += 1
        role.display_name_zh = cfg["display_name_zh"]
        role.display_name_en = cfg["display_name_en"]
        role.description = cfg["description"]
        role.is_system_role = True
        role.grants_full_access = cfg.get("grants_full_access", False)
        role.permissions = [by_key[key] for key in cfg["permissions"] if key in by_key]
        if role.removed:
            role.restore()
    db.session.commit()
    invalidate_all_cache()
    logger.info("Roles: %s created, %s already existed", created, len(ROLES) - created)
    return created


def seed_default_workflows():
    """Ensure the supplier document type has a default workflow."""
    if find_default(DEFAULT_SUPPLIER_WORKFLOW["document_type"]) is not None:
        logger.info("Default supplier workflow already present")
        return None
    cfg = DEFAULT_SUPPLIER_WORKFLOW
    approver_roles = Role.query.filter(Role.name.in_(cfg["approver_roles"])).order_by(Role.id).all()
    definition = WorkflowDefinition(
        workflow_name=cfg["workflow_name"],
        display_name_zh=cfg["display_name_zh"],
        display_name_en=cfg["display_name_en"],
        description=cfg["description"],
        document_type=cfg["document_type"],
        is_active=True,
        is_default=True,
        allow_recall=True,
        on_rejection="return_to_submitter",
        levels=[ApprovalLevel(
            level_number=1,
            level_name=cfg["level_name"],
            approval_mode="any",
            is_mandatory=True,
            approver_user_ids=[],
            approver_roles=approver_roles,
        )],
    )
    db.session.add(definition)
    db.session.commit()
    logger.info("Created default supplier workflow (id=%s)", definition.id)
    return definition


def seed_all():
    seed_permissions()
    seed_roles()
    seed_default_workflows()


def main():
    parser = argparse.ArgumentParser(description="Seed roles, permissions and default workflows")
    parser.add_argument("--env", default="development", help="App environment")
    args = parser.parse_args()

    os.environ.setdefault("APP_ENV", args.env)
    app = create_app(args.env)

    with app.app_context():
        db.create_all()
        seed_all()

        logger.info("Permissions: %s", Permission.query.count())
        logger.info("Roles:       %s", Role.query.count())
        for role_name in ROLES:
            role = Role.query.filter_by(name=role_name).first()
            if role:
                logger.info("  %-30s (%-22s): %3d permissions",
                            role.display_name_en, role.name, len(role.permissions))


if __name__ == "__main__":
    main()
