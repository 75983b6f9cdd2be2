#!/usr/bin/env python3
"""
סקריפט יצירת פרויקט - project, API key, connector ותבנית בפקודה אחת.

ה-API לא כולל CRUD לפרויקטים (מחוץ לתחום), אז ככה מקימים סביבה:

    python scripts/seed_project.py --name "Acme" \\
        --connector-type telegram --credentials '{"botToken": "123:ABC"}' \\
        --template-body "Hi {{name}}, your code is {{code}}"

ה-credentials מוצפנים עם VAULT_ENCRYPTION_KEY לפני השמירה.
ה-API key המלא מודפס פעם אחת בלבד - רק hash של ה-secret נשמר.
"""
import sys
import json
import asyncio
import argparse
from pathlib import Path
from typing import Any

# הוספת תיקיית הפרויקט ל-path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.api_keys import generate_api_key  # noqa: E402
from app.core.vault import Vault, get_vault  # noqa: E402
from app.db.database import AsyncSessionLocal, Base, SessionFactory, engine, new_id  # noqa: E402
from app.db.models.api_key import ApiKey  # noqa: E402
from app.db.models.connector import Connector  # noqa: E402
from app.db.models.project import Project  # noqa: E402
from app.db.models.template import Template  # noqa: E402
from app.domain.services.connectors import ConnectorFactory, supported_providers  # noqa: E402
from app.domain.services.template_renderer import extract_placeholders  # noqa: E402


async def seed_project(
    session_factory: SessionFactory,
    vault: Vault,
    *,
    name: str,
    connector_type: str,
    credentials: dict[str, Any],
    template_body: str,
    template_name: str = "default",
) -> dict[str, str]:
    """
    יוצר את כל השורות בטרנזקציה אחת.

    ה-credentials נבדקים מול ה-connector לפני ההצפנה, כך ששדה חסר נתפס
    כאן ולא בניסיון השליחה הראשון.

    Raises:
        UnsupportedProviderError / ConnectorConfigurationError
    """
    ConnectorFactory().create(connector_type, credentials, connector_id="seed-check")

    generated = generate_api_key()
    project = Project(id=new_id(), name=name)
    connector = Connector(
        id=new_id(),
        project_id=project.id,
        type=connector_type,
        name=f"{name} {connector_type}",
        credentials_encrypted=vault.encrypt(credentials),
    )
    template = Template(
        id=new_id(),
        project_id=project.id,
        provider_type=connector_type,
        name=template_name,
        body=template_body,
        variables=extract_placeholders(template_body),
    )
    api_key = ApiKey(
        id=new_id(),
        project_id=project.id,
        public_key=generated.public_key,
        secret_hash=generated.secret_hash,
    )

    async with session_factory() as db:
        db.add(project)
        await db.flush()
        db.add_all([connector, template, api_key])
        await db.commit()

    return {
        "project_id": project.id,
        "connector_id": connector.id,
        "template_id": template.id,
        "api_key": generated.full_key,
    }


async def _main(args: argparse.Namespace) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        result = await seed_project(
            AsyncSessionLocal,
            get_vault(),
            name=args.name,
            connector_type=args.connector_type,
            credentials=json.loads(args.credentials),
            template_body=args.template_body,
            template_name=args.template_name,
        )
    finally:
        await engine.dispose()

    print("=" * 50)
    for key, value in result.items():
        print(f"  {key:<13} {value}")
    print("=" * 50)
    print("שמרו את ה-API key עכשיו - הוא לא יוצג שוב.")


def main():
    parser = argparse.ArgumentParser(description="יצירת פרויקט עם API key, connector ותבנית")
    parser.add_argument("--name", required=True, help="שם הפרויקט")
    parser.add_argument(
        "--connector-type",
        required=True,
        choices=supported_providers(),
        help="סוג הספק",
    )
    parser.add_argument("--credentials", required=True, help="JSON של ה-credentials של הספק")
    parser.add_argument("--template-body", required=True, help="גוף התבנית עם {{placeholders}}")
    parser.add_argument("--template-name", default="default", help="שם התבנית")
    args = parser.parse_args()

    asyncio.run(_main(args))


if __name__ == "__main__":
    main()
