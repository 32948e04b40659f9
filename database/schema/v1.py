"""Schema v1 - Initial storefront schema.

This version includes tables for:
- Users (ownership joins only)
- Categories and products
- Product reviews
- Orders and order items
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'users',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'email', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'role', 'type': 'TEXT', 'nullable': False, 'default': "'customer'"},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "role IN ('customer', 'merchant', 'admin')"
            ]
        },
        {
            'name': 'categories',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'parent_id', 'type': 'INT8'},
                {'name': 'description', 'type': 'TEXT'},
                {'name': 'sort_order', 'type': 'INT4', 'nullable': False, 'default': '0'}
            ],
            'foreign_keys': [
                {'columns': ['parent_id'], 'references': 'categories(id)'}
            ]
        },
        {
            'name': 'products',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'merchant_id', 'type': 'INT8', 'nullable': False},
                {'name': 'category_id', 'type': 'INT8'},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'description', 'type': 'TEXT'},
                {'name': 'price', 'type': 'DECIMAL(10,2)', 'nullable': False},
                {'name': 'original_price', 'type': 'DECIMAL(10,2)'},
                {'name': 'stock', 'type': 'INT4', 'nullable': False, 'default': '0'},
                {'name': 'sales_count', 'type': 'INT4', 'nullable': False, 'default': '0'},
                {'name': 'image_url', 'type': 'TEXT'},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'active'"},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                'stock >= 0',
                'price > 0',
                "status IN ('active', 'inactive')"
            ],
            'foreign_keys': [
                {'columns': ['merchant_id'], 'references': 'users(id)'},
                {'columns': ['category_id'], 'references': 'categories(id)'}
            ],
            'indexes': [
                {'name': 'idx_products_merchant', 'columns': ['merchant_id']},
                {'name': 'idx_products_category', 'columns': ['category_id']},
                {'name': 'idx_products_ranking', 'columns': ['status', 'sales_count DESC', 'created_at DESC']}
            ]
        },
        {
            'name': 'product_reviews',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'product_id', 'type': 'INT8', 'nullable': False},
                {'name': 'user_id', 'type': 'INT8', 'nullable': False},
                {'name': 'rating', 'type': 'INT2', 'nullable': False},
                {'name': 'content', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                'rating BETWEEN 1 AND 5'
            ],
            'foreign_keys': [
                {'columns': ['product_id'], 'references': 'products(id)'},
                {'columns': ['user_id'], 'references': 'users(id)'}
            ],
            'indexes': [
                {'name': 'idx_reviews_product', 'columns': ['product_id', 'created_at DESC']}
            ]
        },
        {
            'name': 'orders',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'order_no', 'type': 'TEXT', 'nullable': False, 'unique': True},
                {'name': 'user_id', 'type': 'INT8', 'nullable': False},
                {'name': 'total_amount', 'type': 'DECIMAL(12,2)', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'"},
                {'name': 'shipping_address_id', 'type': 'INT8'},
                {'name': 'payment_method', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMP', 'nullable': False, 'default': 'now()'}
            ],
            'checks': [
                "status IN ('pending', 'paid', 'shipped', 'delivered', 'cancelled', 'refunded')"
            ],
            'indexes': [
                {'name': 'idx_orders_user', 'columns': ['user_id', 'created_at DESC']},
                {'name': 'idx_orders_status', 'columns': ['status']}
            ]
        },
        {
            'name': 'order_items',
            'columns': [
                {'name': 'id', 'type': 'BIGSERIAL', 'primary_key': True},
                {'name': 'order_id', 'type': 'INT8', 'nullable': False},
                {'name': 'product_id', 'type': 'INT8', 'nullable': False},
                {'name': 'product_name', 'type': 'TEXT', 'nullable': False},
                {'name': 'product_price', 'type': 'DECIMAL(10,2)', 'nullable': False},
                {'name': 'quantity', 'type': 'INT4', 'nullable': False},
                {'name': 'subtotal', 'type': 'DECIMAL(12,2)', 'nullable': False}
            ],
            'checks': [
                'quantity > 0'
            ],
            'foreign_keys': [
                {'columns': ['order_id'], 'references': 'orders(id)'}
            ],
            'indexes': [
                {'name': 'idx_order_items_order', 'columns': ['order_id']},
                {'name': 'idx_order_items_product', 'columns': ['product_id']}
            ]
        }
    ],
    'triggers': [
        {
            'name': 'trg_products_updated_at',
            'table': 'products',
            'timing': 'BEFORE',
            'event': 'UPDATE',
            'function_name': 'set_updated_at',
            'function_body': '''
                BEGIN
                    NEW.updated_at = now();
                    RETURN NEW;
                END;
            '''
        },
        {
            'name': 'trg_orders_updated_at',
            'table': 'orders',
            'timing': 'BEFORE',
            'event': 'UPDATE',
            'function_name': 'set_updated_at',
            'function_body': '''
                BEGIN
                    NEW.updated_at = now();
                    RETURN NEW;
                END;
            '''
        }
    ],
    'migrations': []
}
