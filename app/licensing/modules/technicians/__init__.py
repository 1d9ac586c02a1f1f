"""
Technician certification module.

Refrigerant-handling technicians apply with their qualification details and
supporting documents; an officer approves (issuing a technician certificate
number) or rejects the application.
"""
