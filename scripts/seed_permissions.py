"""
Seed script to populate the default permission catalog.

Run this script after database initialization to create:
- The system permission catalog (users, permissions, departments,
  sales, finance, operations, system)
- The ``users.view.own`` child of ``users.view``
- Optionally, a first ADMIN user (``SEED_ADMIN_EMAIL``), since every
  administrative route requires an authenticated user

Existing permissions are left untouched, so the script can be re-run.

Usage:
    uv run python -m scripts.seed_permissions
"""
import asyncio
import os
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.permissions.catalog import PermissionCatalog
from app.features.permissions.models import RiskLevel
from app.features.permissions.schemas import PermissionCreate
from app.features.users.models import Role, User
from app.utils import get_logger


log = get_logger(__name__)


ALL_ROLES = [Role.ADMIN, Role.SALES_MANAGER, Role.FINANCE_MANAGER, Role.OPERATIONS_MANAGER]

# (code, name, description, category, module, risk, requires_2fa, requires_approval, roles, min_access_level)
DEFAULT_PERMISSIONS = [
    # User management
    ("users.view", "View Users", "View user list and details", "User Management", "users",
     RiskLevel.LOW, False, False, ALL_ROLES, 1),
    ("users.create", "Create Users", "Create new user accounts", "User Management", "users",
     RiskLevel.HIGH, False, False, [Role.ADMIN], 3),
    ("users.update", "Update Users", "Update user information", "User Management", "users",
     RiskLevel.MEDIUM, False, False, [Role.ADMIN], 3),
    ("users.delete", "Delete Users", "Delete user accounts", "User Management", "users",
     RiskLevel.CRITICAL, True, False, [Role.ADMIN], 4),
    ("users.bulk_update", "Bulk Update Users", "Update multiple users at once", "User Management", "users",
     RiskLevel.HIGH, True, False, [Role.ADMIN], 4),
    ("users.export", "Export Users", "Export user data", "User Management", "users",
     RiskLevel.MEDIUM, False, False, [Role.ADMIN], 3),
    ("users.import", "Import Users", "Import user data", "User Management", "users",
     RiskLevel.HIGH, True, False, [Role.ADMIN], 4),

    # Permission management
    ("permission.view", "View Permissions", "View permissions and assignments", "Permission Management",
     "permissions", RiskLevel.LOW, False, False, [Role.ADMIN], 2),
    ("permission.grant", "Grant Permissions", "Grant permissions to users", "Permission Management",
     "permissions", RiskLevel.CRITICAL, True, True, [Role.ADMIN], 4),
    ("permission.revoke", "Revoke Permissions", "Revoke permissions from users", "Permission Management",
     "permissions", RiskLevel.HIGH, True, False, [Role.ADMIN], 4),
    ("permission.grant_temporary", "Grant Temporary Permissions", "Grant time-limited permissions",
     "Permission Management", "permissions", RiskLevel.HIGH, True, False, [Role.ADMIN], 3),
    ("permission.audit", "View Permission Audit", "View permission audit logs", "Permission Management",
     "permissions", RiskLevel.LOW, False, False, [Role.ADMIN], 3),
    ("permission.manage", "Manage Permissions", "Create, update, and delete permissions",
     "Permission Management", "permissions", RiskLevel.CRITICAL, True, False, [Role.ADMIN], 5),

    # Department management
    ("department.view", "View Departments", "View department information", "Department Management",
     "departments", RiskLevel.LOW, False, False, ALL_ROLES, 1),
    ("department.edit", "Edit Departments", "Edit department information", "Department Management",
     "departments", RiskLevel.MEDIUM, False, False, [Role.ADMIN], 3),
    ("department.manage", "Manage Departments", "Create and delete departments", "Department Management",
     "departments", RiskLevel.HIGH, False, False, [Role.ADMIN], 4),

    # Sales
    ("sales.view", "View Sales Data", "View sales reports and metrics", "Sales", "sales",
     RiskLevel.LOW, False, False, [Role.ADMIN, Role.SALES_MANAGER], 1),
    ("sales.manage_customers", "Manage Customers", "Create and manage customer records", "Sales", "sales",
     RiskLevel.MEDIUM, False, False, [Role.ADMIN, Role.SALES_MANAGER], 2),
    ("sales.manage_orders", "Manage Orders", "Create and manage sales orders", "Sales", "sales",
     RiskLevel.MEDIUM, False, False, [Role.ADMIN, Role.SALES_MANAGER], 2),

    # Finance
    ("finance.view", "View Finance Data", "View financial reports and metrics", "Finance", "finance",
     RiskLevel.MEDIUM, False, False, [Role.ADMIN, Role.FINANCE_MANAGER], 2),
    ("finance.manage_transactions", "Manage Transactions", "Create and manage financial transactions",
     "Finance", "finance", RiskLevel.HIGH, True, False, [Role.ADMIN, Role.FINANCE_MANAGER], 3),
    ("finance.approve_expenses", "Approve Expenses", "Approve expense reports", "Finance", "finance",
     RiskLevel.HIGH, False, True, [Role.ADMIN, Role.FINANCE_MANAGER], 3),

    # Operations
    ("operations.view", "View Operations Data", "View operations reports and metrics", "Operations",
     "operations", RiskLevel.LOW, False, False, [Role.ADMIN, Role.OPERATIONS_MANAGER], 1),
    ("operations.manage_orders", "Manage Order Fulfillment", "Manage order processing and fulfillment",
     "Operations", "operations", RiskLevel.MEDIUM, False, False, [Role.ADMIN, Role.OPERATIONS_MANAGER], 2),
    ("operations.manage_inventory", "Manage Inventory", "Manage inventory levels and stock", "Operations",
     "operations", RiskLevel.MEDIUM, False, False, [Role.ADMIN, Role.OPERATIONS_MANAGER], 2),

    # System
    ("system.view_audit", "View System Audit", "View system audit logs", "System", "system",
     RiskLevel.LOW, False, False, [Role.ADMIN], 3),
    ("system.config", "System Configuration", "Modify system configuration", "System", "system",
     RiskLevel.CRITICAL, True, True, [Role.ADMIN], 5),
    ("system.backup", "System Backup", "Create and restore system backups", "System", "system",
     RiskLevel.HIGH, True, False, [Role.ADMIN], 4),
]

# (code, name, description, parent_code)
CHILD_PERMISSIONS = [
    ("users.view.own", "View Own Profile", "View own user profile", "users.view"),
]


async def seed_permissions(db: AsyncSession) -> int:
    """
    Create missing catalog entries as system permissions.

    Returns:
        Number of permissions created
    """
    log.info("Creating default permissions...")
    catalog = PermissionCatalog(db)
    existing = {p.code for p in await catalog.list_all()}
    created = 0

    for code, name, description, category, module, risk, requires_2fa, requires_approval, roles, level in DEFAULT_PERMISSIONS:
        if code in existing:
            log.debug(f"Permission '{code}' already exists, skipping")
            continue

        await catalog.create(
            PermissionCreate(
                code=code,
                name=name,
                description=description,
                category=category,
                module=module,
                risk_level=risk,
                requires_2fa=requires_2fa,
                requires_approval=requires_approval,
                default_for_roles=roles,
                min_access_level=level,
            ),
            is_system=True,
        )
        created += 1
        log.info(f"Created permission: {code}")

    for code, name, description, parent_code in CHILD_PERMISSIONS:
        if code in existing:
            continue
        parent = await catalog.get(parent_code)
        await catalog.create(
            PermissionCreate(
                code=code,
                name=name,
                description=description,
                category=parent.category,
                module=parent.module,
                parent_code=parent_code,
                default_for_roles=ALL_ROLES,
                min_access_level=1,
            ),
            is_system=True,
        )
        created += 1
        log.info(f"Created hierarchical permission: {code}")

    log.info(f"Created {created} permissions")
    return created


async def seed_admin(db: AsyncSession, email: str) -> None:
    """Create the first ADMIN user if no user with ``email`` exists."""
    result = await db.execute(select(User).where(User.email == email))
    if result.scalars().first():
        log.debug(f"User '{email}' already exists, skipping")
        return

    admin = User(email=email, name="Administrator", role=Role.ADMIN, access_level=5, two_factor_enabled=True)
    db.add(admin)
    await db.commit()
    log.info(f"Created admin user {email} with id {admin.id}")


async def main():
    """Main function to seed the permission catalog."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        try:
            await seed_permissions(db)

            admin_email = os.environ.get("SEED_ADMIN_EMAIL")
            if admin_email:
                await seed_admin(db, admin_email)

            log.info("Permission seeding completed successfully!")
        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
