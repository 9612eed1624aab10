"""
Package root for the dental-supply shipping service.
Shipping rules live in `src.shipping`, the carrier client in `src.skydropx`, and the HTTP layer in `src.api`.
"""
