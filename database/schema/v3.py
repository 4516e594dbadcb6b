"""Schema v3 - Per-ticket history key and insertion order.

This version:
- Widens the unique history key to (hash, type, token_id) so a batch
  transaction emitting one event per ticket keeps a row for every ticket.
- Adds transactions.seq, a monotonic insertion counter that breaks ties
  between rows sharing a timestamp when reading recent history.
"""

from .v2 import schema as v2_schema


def _transactions_v3(table):
    indexes = [idx for idx in table['indexes'] if idx['name'] != 'idx_transactions_hash_type']
    return {
        **table,
        'columns': table['columns'] + [
            {'name': 'seq', 'type': 'BIGSERIAL', 'nullable': False}
        ],
        'indexes': indexes + [
            {'name': 'idx_transactions_hash_type_token', 'columns': ['hash', 'type', 'token_id'], 'unique': True},
            {'name': 'idx_transactions_user_time_seq', 'columns': ['user_address', 'timestamp', 'seq']}
        ]
    }


schema = {
    'version': 3,
    'tables': [
        _transactions_v3(table) if table['name'] == 'transactions' else table
        for table in v2_schema['tables']
    ],
    'migrations': [
        'ALTER TABLE transactions ADD COLUMN IF NOT EXISTS seq BIGSERIAL NOT NULL',
        '''
        CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_hash_type_token
        ON transactions (hash, type, token_id)
        ''',
        'DROP INDEX IF EXISTS idx_transactions_hash_type',
        '''
        CREATE INDEX IF NOT EXISTS idx_transactions_user_time_seq
        ON transactions (user_address, timestamp, seq)
        '''
    ]
}
