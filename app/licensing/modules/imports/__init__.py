"""
Import licenses module.

Tracks each shipment from submission through arrival, inspection and approval;
approval debits the importer's CO2-equivalent quota.
"""
