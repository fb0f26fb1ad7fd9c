from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .common import gen_id


class Address(BaseModel):
    street: str
    additional_line: Optional[str] = None
    zip_code: str
    city: str
    country: str = "France"


class Client(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=gen_id)
    company_name: str
    contact_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    billing_address: Optional[Address] = None
    notes: Optional[str] = None
    active: bool = True


class ClientSnapshot(BaseModel):
    """Copie figée du client portée par les documents."""

    client_id: str
    company_name: str
    contact_name: Optional[str] = None
    email: Optional[str] = None
    billing_address: Optional[Address] = None

    @classmethod
    def of(cls, client: Client) -> "ClientSnapshot":
        return cls(
            client_id=client.id,
            company_name=client.company_name,
            contact_name=client.contact_name,
            email=client.email,
            billing_address=client.billing_address.model_copy() if client.billing_address else None,
        )
