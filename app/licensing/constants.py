"""
Central constants for the licensing application.
"""
from __future__ import annotations

# Sequence counters (human-facing numbers)
COUNTER_REGISTRATION_CERT = "registrationCert"
COUNTER_IMPORT_LICENSE = "importLicense"
COUNTER_IMPORTER_NUMBER = "importerNumber"
COUNTER_TECHNICIAN_CERT = "technicianCert"

COUNTER_NAMES = frozenset(
    {
        COUNTER_REGISTRATION_CERT,
        COUNTER_IMPORT_LICENSE,
        COUNTER_IMPORTER_NUMBER,
        COUNTER_TECHNICIAN_CERT,
    }
)

# Over-quota debit policies
QUOTA_POLICY_CLAMP = "clamp"
QUOTA_POLICY_BLOCK = "block"
QUOTA_POLICIES = frozenset({QUOTA_POLICY_CLAMP, QUOTA_POLICY_BLOCK})

# Registration window: December, for the following calendar year
REGISTRATION_OPEN_MONTH = 12

# Default catalog (ASHRAE code, chemical name, GWP (AR4, 100-yr), restricted, type)
DEFAULT_REFRIGERANTS = (
    ("R-12", "Dichlorodifluoromethane", "10900", True, "CFC"),
    ("R-22", "Chlorodifluoromethane", "1810", True, "HCFC"),
    ("R-32", "Difluoromethane", "675", False, "HFC"),
    ("R-134a", "1,1,1,2-Tetrafluoroethane", "1430", False, "HFC"),
    ("R-404A", "R-125/143a/134a blend", "3922", False, "HFC blend"),
    ("R-407C", "R-32/125/134a blend", "1774", False, "HFC blend"),
    ("R-410A", "R-32/125 blend", "2088", False, "HFC blend"),
    ("R-507A", "R-125/143a blend", "3985", False, "HFC blend"),
    ("R-1234yf", "2,3,3,3-Tetrafluoropropene", "4", False, "HFO"),
    ("R-290", "Propane", "3", False, "HC"),
    ("R-600a", "Isobutane", "3", False, "HC"),
    ("R-744", "Carbon dioxide", "1", False, "Natural"),
)

# Technician certification
TECHNICIAN_QUALIFICATION_LEVELS = ("Level 1", "Level 2", "Level 3")
