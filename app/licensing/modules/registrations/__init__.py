"""
Registrations module.

An importer registers once per calendar year for the refrigerants it intends to
import. Approval issues a certificate number and sets the yearly CO2 allowance.
"""
