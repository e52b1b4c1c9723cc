"""vCard 3.0 text for the contact form."""

from dataclasses import dataclass, fields
from typing import Optional

OPTIONAL_FIELDS = (
    "mobile", "work", "email", "company", "role",
    "street", "city", "state", "website", "color",
)


@dataclass
class ContactData:
    first_name: str
    last_name: str
    mobile: Optional[str] = None
    work: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    role: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    website: Optional[str] = None
    color: Optional[str] = None

    @classmethod
    def from_mapping(cls, data):
        """Build from a request body. Blank optional values become None.

        Raises ValueError when a name is missing or a value is not text.
        """
        for key in ("first_name", "last_name"):
            if not isinstance(data.get(key), str):
                raise ValueError(f"{key} is required")

        values = {"first_name": data["first_name"], "last_name": data["last_name"]}
        for key in OPTIONAL_FIELDS:
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{key} must be a string")
            values[key] = value or None
        return cls(**values)

    def as_row(self):
        return tuple(getattr(self, f.name) for f in fields(self))


def format_vcard(contact: ContactData) -> str:
    vcard = "BEGIN:VCARD\nVERSION:3.0\n"

    vcard += f"FN:{contact.first_name} {contact.last_name}\n"
    vcard += f"N:{contact.last_name};{contact.first_name};;;\n"

    if contact.mobile:
        vcard += f"TEL;TYPE=CELL:{contact.mobile}\n"
    if contact.work:
        vcard += f"TEL;TYPE=WORK:{contact.work}\n"
    if contact.email:
        vcard += f"EMAIL:{contact.email}\n"
    if contact.company:
        vcard += f"ORG:{contact.company}\n"
    if contact.role:
        vcard += f"TITLE:{contact.role}\n"

    # ADR keeps all seven segments even when only one part is known
    if contact.street or contact.city or contact.state:
        vcard += "ADR;TYPE=WORK:;;{};{};{};;;\n".format(
            contact.street or "", contact.city or "", contact.state or ""
        )

    if contact.website:
        vcard += f"URL:{contact.website}\n"

    vcard += "END:VCARD"
    return vcard
