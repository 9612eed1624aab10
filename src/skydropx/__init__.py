"""
Skydropx carrier aggregator client used for live quotes and shipment creation.
"""
