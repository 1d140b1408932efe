#!/usr/bin/env python3
"""
Create the voting schema and load award categories into PostgreSQL.

Categories are read from a JSON file holding a list of
{"id": 1, "title": "...", "nominees": {"A": "...", "B": "...", "C": "...", "D": "..."}}
objects. Existing categories keep their unlock state; only title and nominees
are refreshed.

Usage:
    python seed_categories.py [--file FILE] [--dsn DSN] [--lock-all]

Environment Variables:
    POSTGRES_HOST, POSTGRES_PORT, POSTGRES_DB, POSTGRES_USER, POSTGRES_PASSWORD
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List

from awards_voting.config import settings
from awards_voting.data_store.base import StoreError
from awards_voting.data_store.postgres import PostgresDataStore
from awards_voting.shared.models import Category


def read_categories(path: Path) -> List[Category]:
    """
    Read and validate categories from a JSON file.

    Args:
        path: JSON file with a list of categories

    Returns:
        list: Validated categories

    Raises:
        ValueError: the file is malformed or a category is invalid
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError(f"Expected a list of categories in {path}")

    categories = []
    seen = set()
    for entry in data:
        try:
            category = Category.from_dict({**entry, 'is_unlocked': False})
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed category entry {entry!r}: {e}") from e

        is_valid, error = category.validate()
        if not is_valid:
            raise ValueError(f"Category {entry.get('id')!r}: {error}")
        if category.id in seen:
            raise ValueError(f"Category {category.id} appears more than once")
        seen.add(category.id)
        categories.append(category)

    return categories


async def seed(dsn: str, categories: List[Category], lock_all: bool = False) -> int:
    """Create the schema, upsert every category and return how many were written."""
    store = PostgresDataStore(dsn=dsn)
    await store.initialize(create_schema=True)
    print("✓ Schema ensured")

    try:
        for category in categories:
            await store.upsert_category(category)
            print(f"  {category.id}: {category.title}")

        if lock_all:
            await store.update_categories({'is_unlocked': False})
            print("✓ All categories locked")
    finally:
        await store.close()

    return len(categories)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Create the voting schema and load award categories'
    )
    parser.add_argument(
        '--file',
        type=Path,
        default=Path(__file__).parent / 'categories.example.json',
        help='JSON file with the categories (default: categories.example.json)'
    )
    parser.add_argument(
        '--dsn',
        default=settings.postgres_dsn,
        help='PostgreSQL DSN (default: built from POSTGRES_* settings)'
    )
    parser.add_argument(
        '--lock-all',
        action='store_true',
        help='Lock every category after loading'
    )

    args = parser.parse_args()

    try:
        categories = read_categories(args.file)
    except (OSError, ValueError) as e:
        print(f"✗ Could not read categories: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Loading {len(categories)} categories from {args.file}")

    try:
        count = asyncio.run(seed(args.dsn, categories, lock_all=args.lock_all))
    except KeyboardInterrupt:
        print("\n\n✗ Seeding interrupted by user", file=sys.stderr)
        sys.exit(1)
    except StoreError as e:
        print(f"\n✗ Database error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"\n✓ Seed complete: {count} categories")


if __name__ == '__main__':
    main()
