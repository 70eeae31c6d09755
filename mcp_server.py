import sys
from contextlib import contextmanager
from typing import Optional

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from campusmarket.core.database import SessionLocal
from campusmarket.core.errors import CampusMarketError
from campusmarket.models.mpesa_callback import MpesaCallback
from campusmarket.models.wallet import Wallet
from campusmarket.services.escrow import EscrowService
from campusmarket.services.payment_gateway import PaymentGateway
from campusmarket.services.polling import poll_payment_status

# Create an MCP server instance
mcp = FastMCP("CampusMarket-Ledger-Server")

@contextmanager
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

@mcp.tool()
def get_transaction_status(transaction_id: str, user_id: str) -> dict:
    """Look up an escrow transaction's status as seen by its buyer or seller."""
    with get_db() as db:
        try:
            txn = EscrowService(db).get_transaction_status(transaction_id, user_id)
        except CampusMarketError as e:
            return {"error": e.message}
        return {
            "transaction_id": txn.id,
            "status": txn.status.value,
            "amount": str(txn.amount),
            "platform_fee": str(txn.platform_fee),
            "seller_amount": str(txn.seller_amount),
            "receipt_number": txn.mpesa_receipt_number,
            "seller_confirmed_delivery": txn.seller_confirmed_delivery,
            "buyer_confirmed": txn.buyer_confirmed,
            "auto_release_at": txn.auto_release_at.isoformat() if txn.auto_release_at else None,
        }

@mcp.tool()
def get_wallet(user_id: str) -> dict:
    """Retrieve a user's wallet balances."""
    with get_db() as db:
        wallet = db.scalars(select(Wallet).where(Wallet.user_id == user_id)).first()
        if not wallet:
            return {"error": "Wallet not found"}
        return {
            "user_id": wallet.user_id,
            "available_balance": str(wallet.available_balance),
            "escrow_balance": str(wallet.escrow_balance),
            "total_earned": str(wallet.total_earned),
            "total_fees_paid": str(wallet.total_fees_paid),
        }

@mcp.tool()
def list_unprocessed_callbacks(limit: int = 50) -> list[dict]:
    """List stored M-Pesa callbacks that have not reached the ledger yet, oldest first."""
    with get_db() as db:
        rows = db.scalars(
            select(MpesaCallback)
            .where(MpesaCallback.processed.is_(False))
            .order_by(MpesaCallback.created_at)
            .limit(limit)
        ).all()
        return [
            {
                "id": row.id,
                "checkout_request_id": row.checkout_request_id,
                "result_code": row.result_code,
                "result_desc": row.result_desc,
                "amount": str(row.amount) if row.amount is not None else None,
                "receipt_number": row.mpesa_receipt_number,
                "verified": row.verified,
                "received_at": row.created_at.isoformat(),
            }
            for row in rows
        ]

@mcp.tool()
def reprocess_callbacks() -> dict:
    """Re-apply stored successful callbacks whose transaction was never marked paid."""
    with get_db() as db:
        return {"reprocessed": PaymentGateway(db).reprocess_unprocessed_callbacks()}

@mcp.tool()
def wait_for_payment(transaction_id: str, user_id: str, max_attempts: Optional[int] = None) -> dict:
    """
    Poll a transaction until its payment lands or the polling window closes.
    A timeout does not mean the payment failed; the callback may still arrive.
    """
    def read_status():
        with get_db() as db:
            return EscrowService(db).get_transaction_status(transaction_id, user_id).status

    try:
        outcome = poll_payment_status(read_status, max_attempts=max_attempts)
    except CampusMarketError as e:
        return {"error": e.message}
    return {"transaction_id": transaction_id, "outcome": outcome.value}

if __name__ == "__main__":
    # Start the standard streaming stdio server
    print("Starting CampusMarket Ledger MCP Server on stdio...", file=sys.stderr)
    mcp.run()
