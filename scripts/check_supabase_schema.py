# Check Supabase table schemas against the entity records
from __future__ import annotations
import sys
import io
from pathlib import Path

sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8', errors='replace')
sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding='utf-8', errors='replace')

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import toml


def main():
    from supabase import create_client
    from sync_core.models import EntityKind, entity_type

    secrets_path = project_root / ".streamlit" / "secrets.toml"
    secrets = toml.load(secrets_path)
    client = create_client(secrets["supabase"]["url"], secrets["supabase"]["key"])

    for kind in EntityKind:
        record_cls = entity_type(kind)
        expected = {record_cls.column_for(name) for name in record_cls.attributes()}

        print(f"\n{'='*60}")
        print(f"Table: {kind.table} ({record_cls.__name__})")
        print(f"{'='*60}")
        try:
            # One row shows the column structure
            response = client.table(kind.table).select("*").limit(1).execute()
            if not response.data:
                print("  (no data found)")
                continue
            row = response.data[0]
            print("Columns:")
            for key, value in row.items():
                marker = " " if key in expected else "?"
                print(f" {marker} {key}: {type(value).__name__} = {repr(value)[:50]}")
            missing = sorted(expected - set(row))
            if missing:
                print(f"  Missing columns: {', '.join(missing)}")
        except Exception as e:
            print(f"  Error: {e}")


if __name__ == "__main__":
    main()
