"""
Shipping rules for storefront orders.
Weights, rate ranking, pricing reconciliation, and guarded metadata writes are pure or store-backed modules here.
"""
