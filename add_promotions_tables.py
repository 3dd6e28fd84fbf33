"""
add_promotions_tables.py
------------------------
Migration: Create the promotion tables and add targeting columns to users.
Idempotent — safe to re-run.

Run: python add_promotions_tables.py
"""
import os, sys
sys.path.insert(0, os.getcwd())

from app import create_app, db
from sqlalchemy import text, inspect as sa_inspect

app = create_app(os.environ.get('FLASK_ENV', 'default'))

_PROMOTIONS_COLUMNS = """
                name              VARCHAR(120) NOT NULL,
                description       VARCHAR(500) NOT NULL DEFAULT '',
                promo_type        VARCHAR(30)  NOT NULL,
                value             NUMERIC(12,4) NOT NULL DEFAULT 0,
                code              VARCHAR(60) UNIQUE,
                auto_apply        BOOLEAN NOT NULL DEFAULT {false},
                starts_at         TIMESTAMP,
                ends_at           TIMESTAMP,
                is_active         BOOLEAN NOT NULL DEFAULT {true},
                priority          INT NOT NULL DEFAULT 0,
                stacking_policy   VARCHAR(20) NOT NULL DEFAULT 'EXCLUSIVE',
                scope             TEXT NOT NULL DEFAULT '{{}}',
                targeting         TEXT NOT NULL DEFAULT '{{}}',
                eligibility       TEXT NOT NULL DEFAULT '{{}}',
                max_uses_total    INT,
                max_uses_per_user INT,
                uses_total        INT NOT NULL DEFAULT 0 CHECK (uses_total >= 0),
                created_by        INT REFERENCES users(id),
                created_at        TIMESTAMP NOT NULL DEFAULT {now},
                updated_at        TIMESTAMP NOT NULL DEFAULT {now}
"""

_REDEMPTIONS_COLUMNS = """
                promotion_id INT NOT NULL REFERENCES promotions(id),
                order_ref    VARCHAR(64) NOT NULL,
                user_id      VARCHAR(64),
                status       VARCHAR(20) NOT NULL DEFAULT 'reserved',
                created_at   TIMESTAMP NOT NULL DEFAULT {now},
                updated_at   TIMESTAMP NOT NULL DEFAULT {now},
                CONSTRAINT uq_redemption_promo_order UNIQUE (promotion_id, order_ref)
"""

_USAGE_COLUMNS = """
                promotion_id INT NOT NULL REFERENCES promotions(id),
                user_id      VARCHAR(64) NOT NULL,
                uses_total   INT NOT NULL DEFAULT 0 CHECK (uses_total >= 0),
                CONSTRAINT uq_usage_promo_user UNIQUE (promotion_id, user_id)
"""

_APPLIED_COLUMNS = """
                order_ref       VARCHAR(64) NOT NULL,
                promotion_id    INT REFERENCES promotions(id),
                promo_name      VARCHAR(120) NOT NULL,
                code            VARCHAR(60),
                promo_type      VARCHAR(30) NOT NULL,
                discount_minor  INT NOT NULL,
                priority        INT NOT NULL DEFAULT 0,
                stacking_policy VARCHAR(20),
                created_at      TIMESTAMP NOT NULL DEFAULT {now}
"""

_DIALECT = {
    'pg':     {'pk': 'id SERIAL PRIMARY KEY', 'true': 'TRUE', 'false': 'FALSE', 'now': 'NOW()'},
    'sqlite': {'pk': 'id INTEGER PRIMARY KEY AUTOINCREMENT', 'true': '1', 'false': '0',
               'now': 'CURRENT_TIMESTAMP'},
}

TABLES = {
    'promotions':            _PROMOTIONS_COLUMNS,
    'promotion_redemptions': _REDEMPTIONS_COLUMNS,
    'promotion_user_usage':  _USAGE_COLUMNS,
    'applied_promotions':    _APPLIED_COLUMNS,
}

USER_COLUMNS = {
    'segments': "ALTER TABLE users ADD COLUMN segments TEXT NOT NULL DEFAULT '[]'",
    'city':     "ALTER TABLE users ADD COLUMN city VARCHAR(120)",
}


def table_ddl(name: str, dialect: str) -> str:
    d = _DIALECT[dialect]
    columns = TABLES[name].format(true=d['true'], false=d['false'], now=d['now'])
    return f"CREATE TABLE {name} (\n                {d['pk']},{columns})"


with app.app_context():
    inspector = sa_inspect(db.engine)
    dialect   = 'pg' if db.engine.dialect.name == 'postgresql' else 'sqlite'
    existing  = set(inspector.get_table_names())

    with db.engine.connect() as conn:
        for table_name in TABLES:
            if table_name in existing:
                print(f'ℹ️   {table_name} already exists — skipping.')
                continue
            try:
                conn.execute(text(table_ddl(table_name, dialect)))
                conn.commit()
                print(f'✅  Created {table_name}.')
            except Exception as e:
                conn.rollback()
                print(f'❌  Error creating {table_name}: {e}')

        if 'users' in existing:
            user_cols = {c['name'] for c in inspector.get_columns('users')}
            for column, ddl in USER_COLUMNS.items():
                if column in user_cols:
                    continue
                try:
                    conn.execute(text(ddl))
                    conn.commit()
                    print(f'✅  Added users.{column}.')
                except Exception as e:
                    conn.rollback()
                    print(f'❌  Error adding users.{column}: {e}')

    print('✅  Promotions tables migration complete.')
