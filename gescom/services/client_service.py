from __future__ import annotations

from typing import List, Optional

from gescom.errors import NotFoundError
from gescom.models.client import Client, ClientSnapshot
from gescom.storage.repo import Repository


class ClientService:
    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    def list_clients(self, *, active: Optional[bool] = None) -> List[Client]:
        rows = self.repo.list_all()
        clients = [Client.model_validate(d) for d in rows]
        if active is not None:
            clients = [c for c in clients if c.active == active]
        return sorted(clients, key=lambda c: c.company_name.lower())

    def add_client(self, client: Client) -> Client:
        self.repo.add(client)
        return client

    def update_client(self, client: Client) -> Client:
        self.repo.update(client)
        return client

    def get_by_id(self, client_id: str) -> Optional[Client]:
        d = self.repo.get_by_id(client_id)
        return Client.model_validate(d) if d else None

    def get(self, client_id: str) -> Client:
        client = self.get_by_id(client_id)
        if client is None:
            raise NotFoundError("Client", client_id)
        return client

    def snapshot(self, client_id: str) -> ClientSnapshot:
        return ClientSnapshot.of(self.get(client_id))
