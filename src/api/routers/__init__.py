# This file marks the routers package for the shipping API.
# Public checkout routes live in shipping.py; order administration and reports live in the admin_* modules.
# Health and readiness probes stay unversioned in health.py.
