# This file marks the services package for shipping business logic behind the routers.
# Services translate domain errors from src.shipping and src.skydropx into APIError responses.
# Routers stay thin and only build envelopes around service results.
