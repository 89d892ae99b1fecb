"""
Header-alias field resolution.

Upstream exports rename their columns between snapshots, so each logical field
is looked up under an ordered list of known header names; the first non-empty
value wins. All stages share the alias tables below.
"""
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np

from techindex.errors import SchemaDriftError

ROSTER_FIELDS: Dict[str, Tuple[str, ...]] = {
    "street1": (
        "Address Line 1", "address1", "Address1", "address", "Address", "addr1",
        "addressLine1", "street", "Street", "street1", "mailingAddress1",
        "Mailing Address", "Business Address",
    ),
    "street2": ("Address Line 2", "address2", "Address2", "addr2", "addressLine2", "street2", "mailingAddress2"),
    "city": ("City", "city", "CITY", "mailingCity", "town"),
    "state": ("State", "state", "STATE", "mailingState", "st"),
    "zip": (
        "Mail Zip Code", "Zip Code", "zip", "Zip", "ZIP", "postal", "Postal",
        "PostalCode", "Postal Code", "postalCode", "mailingZip",
    ),
    "license_number": ("License Number", "licenseNumber", "license_number", "techId", "licenseeId", "personId"),
    "full_name": (
        "Formatted Name", "name", "Name", "FULL_NAME", "FullName", "Licensee", "Licensee Name", "fullName",
    ),
    "first_name": ("First Name", "first_name", "FirstName", "FIRST_NAME", "FIRST NAME"),
    "last_name": ("Last Name", "last_name", "LastName", "LAST_NAME", "LAST NAME"),
    "license_type": ("License Type", "license_type", "LicenseType", "LICENSE_TYPE", "Type", "Credential"),
    "status": (
        "License Status Description", "License Status", "LicenseStatus", "status", "Status", "STATUS",
    ),
    "expiration": ("License Expiration Date", "expirationDate", "expiration_date"),
    "entity_name": ("Entity Name", "entityName", "entity_name"),
}

REGISTRATION_FIELDS: Dict[str, Tuple[str, ...]] = {
    "business_name": (
        "businessName", "shopName", "shop_name", "dba", "dbaName", "entityName", "entity_name", "name",
    ),
    "license_number": (
        "licenseNumber", "registrationNumber", "registration_number", "licenseNo", "license_no",
        "regNumber", "reg_number",
    ),
    "address_key": ("addressKey", "addrKey", "address_key"),
    "street1": ("address1", "addr1", "street", "street1"),
    "street2": ("address2", "addr2", "street2"),
    "city": ("city", "town"),
    "state": ("state", "st"),
    "zip": ("zip", "postalCode", "postal_code"),
    "status": ("status", "licenseStatus"),
    "rollup_key": ("rollupKey", "rollup_key", "addrRollupKey"),
}


def clean(value: Any) -> str:
    """String form of a cell, treating None and NaN as empty."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    if isinstance(value, (float, np.floating)):
        # NaN is an empty cell; whole floats are ids or zips read as numbers
        if np.isnan(value):
            return ""
        return str(int(value)) if float(value).is_integer() else str(float(value))
    return str(value).strip()


class FieldResolver:
    """Resolve logical fields from loosely-typed rows through ordered alias lists."""

    def __init__(self, aliases: Mapping[str, Sequence[str]]):
        self.aliases = {name: tuple(names) for name, names in aliases.items()}

    def get(self, row: Mapping[str, Any], field: str, default: str = "") -> str:
        for alias in self.aliases[field]:
            value = clean(row.get(alias))
            if value:
                return value
        return default

    def present(self, columns: Iterable[str], field: str) -> Optional[str]:
        """The first alias of `field` that appears among `columns`, if any."""
        cols = set(columns)
        for alias in self.aliases[field]:
            if alias in cols:
                return alias
        return None

    def require(self, columns: Iterable[str], fields: Sequence[str], sample: Optional[Mapping[str, Any]] = None) -> None:
        cols = list(columns)
        for field in fields:
            if self.present(cols, field) is None:
                raise SchemaDriftError(field, self.aliases[field], dict(sample or {}))


roster_fields = FieldResolver(ROSTER_FIELDS)
registration_fields = FieldResolver(REGISTRATION_FIELDS)
