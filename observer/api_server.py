"""
Observer API Server

Read-only HTTP interface over the projected supply-chain state.

Endpoints:
- GET /api/health
- GET /api/participants, /api/participants/{address}
- GET /api/participants/{address}/inventory?block=
- GET /api/items/{barcode}, /api/items/{barcode}/history
- GET /api/transactions/proof?block_number=&tx_ref=
- GET /api/audit/items/{barcode}
- GET /api/stats
"""

import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .indexer.coordinator import ObserverService


logger = logging.getLogger("ObserverAPI")


def create_app(service: ObserverService, manage_lifecycle: bool = False) -> FastAPI:
    """
    Build the FastAPI application for a service.

    With manage_lifecycle the service is started and stopped with the
    server (used by `observer serve`).
    """
    app = FastAPI(title="Supply Chain Observer API", version=__version__)
    query = service.query

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if manage_lifecycle:
        @app.on_event("startup")
        async def startup():
            await service.start()
            logger.info("Observer service started with API")

        @app.on_event("shutdown")
        async def shutdown():
            await service.stop()

    # ==========================================================================
    # Health & Stats
    # ==========================================================================

    @app.get("/api/health")
    def health() -> Dict:
        return service.health()

    @app.get("/api/stats")
    def stats() -> Dict:
        return {
            **query.get_stats(),
            "indexer": service.scanner.status(),
        }

    # ==========================================================================
    # Participants
    # ==========================================================================

    @app.get("/api/participants")
    def list_participants() -> List[Dict]:
        return query.list_participants()

    @app.get("/api/participants/{address}")
    def get_participant(address: str) -> Dict:
        participant = query.get_participant(address)
        if participant is None:
            raise HTTPException(status_code=404, detail=f"Participant {address} not found")
        return participant

    @app.get("/api/participants/{address}/inventory")
    def get_inventory(address: str, block: Optional[int] = Query(None, ge=0)) -> Dict:
        return {
            "address": address.lower(),
            "as_of_block": block,
            "inventory": query.get_inventory(address, as_of_height=block),
        }

    # ==========================================================================
    # Items
    # ==========================================================================

    @app.get("/api/items/{barcode}")
    def get_item(barcode: str) -> Dict:
        item = query.get_item(barcode)
        if item is None:
            raise HTTPException(status_code=404, detail=f"Item {barcode} not found")
        return item

    @app.get("/api/items/{barcode}/history")
    def get_item_history(barcode: str) -> Dict:
        history = query.get_item_history(barcode)
        return {"barcode": barcode, "history": history, "count": len(history)}

    @app.get("/api/transactions/proof")
    def get_transaction_proof(
        block_number: int = Query(..., ge=0),
        tx_ref: str = Query(..., min_length=1)
    ) -> Dict:
        proof = query.get_transaction_proof(block_number, tx_ref)
        if proof is None:
            raise HTTPException(
                status_code=404,
                detail=f"No indexed events for {tx_ref} in block {block_number}"
            )
        return proof

    @app.get("/api/audit/items/{barcode}")
    def get_audit_trail(barcode: str) -> Dict:
        trail = query.get_audit_trail(barcode)
        if trail is None:
            raise HTTPException(status_code=404, detail=f"Item {barcode} not found")
        return trail

    return app
