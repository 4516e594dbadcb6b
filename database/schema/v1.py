"""Schema v1 - Initial projection schema.

This version includes tables for:
- Users (any address seen as owner, sender or recipient)
- Tickets and their lifecycle status
- Active marketplace listings
- Transaction history
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'users',
            'columns': [
                {'name': 'address', 'type': 'TEXT', 'primary_key': True},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'tickets',
            'columns': [
                {'name': 'token_id', 'type': 'INT8', 'primary_key': True},
                {'name': 'owner_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'IDLE'"},
                {'name': 'price', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_tickets_owner', 'columns': ['owner_address']},
                {'name': 'idx_tickets_status', 'columns': ['status']}
            ]
        },
        {
            'name': 'listings',
            'columns': [
                {'name': 'token_id', 'type': 'INT8', 'primary_key': True},
                {'name': 'seller_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'price', 'type': 'INT8', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['token_id'], 'references': 'tickets(token_id)'}
            ],
            'indexes': [
                {'name': 'idx_listings_seller', 'columns': ['seller_address']}
            ]
        },
        {
            'name': 'transactions',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'hash', 'type': 'TEXT', 'nullable': False},
                {'name': 'type', 'type': 'TEXT', 'nullable': False},
                {'name': 'user_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'token_id', 'type': 'INT8', 'nullable': False},
                {'name': 'amount', 'type': 'DECIMAL'},
                {'name': 'timestamp', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_transactions_user_time', 'columns': ['user_address', 'timestamp']},
                {'name': 'idx_transactions_token', 'columns': ['token_id']}
            ]
        }
    ]
}
