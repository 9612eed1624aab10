# This file marks the schemas package for request and response models.
# Checkout quote contracts live in shipping_schemas.py and order administration contracts in admin_order_schemas.py.
# Shared envelope and error shapes live in common.py so every route documents the same error body.
