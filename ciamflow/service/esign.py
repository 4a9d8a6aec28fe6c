from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from ciamflow.logging import get_logger
from ciamflow.storage.models import ESignAcceptance, ESignObligation, utcnow
from ciamflow.storage.repository import StoreView


@dataclass(frozen=True)
class ESignDocument:
    document_id: str
    title: str
    version: str
    mandatory: bool = True


DEFAULT_DOCUMENTS = (
    ESignDocument(
        document_id="terms-v1-2025",
        title="Terms and Conditions",
        version="1.0",
        mandatory=True,
    ),
)


class ESignGate:
    """Pending signature obligations gating the completion of a flow.

    Each user holds at most one obligation; requiring a different document
    replaces the previous one. Acceptances are an append-only log.
    """

    def __init__(self, documents: Iterable[ESignDocument] = DEFAULT_DOCUMENTS) -> None:
        self.documents: Dict[str, ESignDocument] = {d.document_id: d for d in documents}
        self.logger = get_logger(__name__)

    def document(self, document_id: str) -> Optional[ESignDocument]:
        return self.documents.get(document_id)

    def require(
        self,
        tx: StoreView,
        cupid: str,
        document_id: str,
        *,
        mandatory: bool = True,
        reason: Optional[str] = None,
    ) -> ESignObligation:
        obligation = ESignObligation(
            cupid=cupid,
            document_id=document_id,
            created_at=utcnow(),
            mandatory=mandatory,
            reason=reason,
        )
        existing = tx.esign_obligations.find_by_id(cupid)
        if existing is not None:
            if existing.document_id != document_id:
                self.logger.info(
                    "esign_obligation_replaced",
                    cupid=cupid,
                    previous_document_id=existing.document_id,
                    document_id=document_id,
                )
            tx.esign_obligations.update_by_id(
                cupid,
                document_id=document_id,
                created_at=obligation.created_at,
                mandatory=mandatory,
                reason=reason,
            )
        else:
            tx.esign_obligations.create(obligation)
        return obligation

    def pending(self, tx: StoreView, cupid: str) -> Optional[ESignObligation]:
        return tx.esign_obligations.find_by_id(cupid)

    def is_satisfied(self, tx: StoreView, cupid: str, document_id: str) -> bool:
        return any(
            acceptance.document_id == document_id
            for acceptance in tx.esign_acceptances.find_by("cupid", cupid)
        )

    def accept(
        self,
        tx: StoreView,
        cupid: str,
        document_id: str,
        *,
        transaction_id: Optional[str] = None,
        context_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ESignAcceptance:
        acceptance = ESignAcceptance(
            acceptance_id=str(uuid.uuid4()),
            cupid=cupid,
            document_id=document_id,
            accepted_at=utcnow(),
            transaction_id=transaction_id,
            context_id=context_id,
            ip_address=ip_address,
        )
        tx.esign_acceptances.create(acceptance)
        obligation = tx.esign_obligations.find_by_id(cupid)
        if obligation is not None and obligation.document_id == document_id:
            tx.esign_obligations.delete_by_id(cupid)
        self.logger.info("esign_accepted", cupid=cupid, document_id=document_id)
        return acceptance

    def decline(self, tx: StoreView, cupid: str, document_id: str) -> None:
        # The obligation stays; the next login asks again
        self.logger.info("esign_declined", cupid=cupid, document_id=document_id)


__all__ = ["DEFAULT_DOCUMENTS", "ESignDocument", "ESignGate"]
