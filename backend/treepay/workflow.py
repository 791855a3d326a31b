import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .bot import alert
from .config import Settings
from .contracts import ContractService
from .ledger import (
    get_order_details_for_contract,
    get_trees_for_order,
    mark_order_completed,
    record_delivery,
    update_contract_url,
)
from .models import Order, PaymentMethod
from .retry import TreeGenerationRetryService
from .trees import mint_tree
from .utils import now_vn

logger = logging.getLogger("workflow")

DEFAULT_LOT_NAME = "Khu A"
DEFAULT_CUSTOMER_NAME = "Khach hang"


def build_contract_data(details: dict) -> dict:
    order = details["order"]
    trees = details["trees"]
    return {
        "order_code": order.order_code,
        "customer_name": order.buyer_name or DEFAULT_CUSTOMER_NAME,
        "customer_id": order.buyer_id,
        "customer_email": order.buyer_email,
        "customer_phone": order.buyer_phone,
        "tree_count": len(trees) or order.quantity,
        "total_amount": order.total_amount,
        "tree_codes": [t.tree_code for t in trees],
        "lot_name": details["lot_name"] or DEFAULT_LOT_NAME,
        "payment_method": "USDT" if order.payment_method == PaymentMethod.USDT else "BANKING",
        "payment_date": order.paid_at or now_vn(),
        "contract_date": now_vn(),
    }


async def record_settlement(
        db: Session,
        settings: Settings,
        provider: str,
        transaction_id: str | None,
        order: Order,
        correlation_id: str,
        amount=None,
        currency: str | None = None,
        raw: str | None = None,
) -> bool:
    """
    Audit row for a committed settlement. A failure here is alerted and
    swallowed: the order is already VERIFIED, so the caller must still run
    the post-payment workflow.
    """
    order_id, order_code = order.id, order.order_code
    try:
        record_delivery(db, provider, transaction_id, "SETTLED", order_id=order_id,
                        amount=amount, currency=currency, raw=raw)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("[WORKFLOW:%s] Settlement audit write failed for order %s", correlation_id, order_code)
        await alert(settings, {
            "event": "SETTLEMENT_AUDIT_FAILED",
            "orderId": order_id,
            "orderCode": order_code,
            "transactionId": transaction_id,
            "correlationId": correlation_id,
            "error": str(e),
            "alertLevel": "P1",
            "recoveryAction": "REGENERATE_ARTIFACTS",
        })
        return False
    return True


async def trigger_post_payment_workflow(
        db: Session,
        order: Order,
        correlation_id: str,
        settings: Settings,
        contract_service: ContractService,
        retry_service: TreeGenerationRetryService | None = None,
) -> dict:
    """
    Mint the order's tree codes and deliver its contract.

    Runs after the settlement is committed, so nothing here may fail the
    webhook: every error is logged, alerted and reported in the summary.
    Safe to run again for the same order; only missing trees are minted and
    the contract is overwritten under the same key.
    """
    retry_service = retry_service or TreeGenerationRetryService()
    summary = {"treesGenerated": 0, "treesFailed": 0, "contract": None, "completed": False}
    order_id, order_code = order.id, order.order_code

    try:
        missing = order.quantity - len(get_trees_for_order(db, order.id))

        async def generate() -> str:
            return mint_tree(db, order)

        if missing > 0:
            result = await retry_service.generate_tree_codes_with_retry(generate, missing, order.id, correlation_id)
            summary["treesGenerated"] = len(result.generated)
            summary["treesFailed"] = result.failed

            if not result.success:
                await alert(settings, {
                    "event": "POST_PAYMENT_PARTIAL_FAILURE",
                    "orderId": order.id,
                    "orderCode": order.order_code,
                    "generatedCount": len(result.generated),
                    "failedCount": result.failed,
                    "correlationId": correlation_id,
                    "alertLevel": "P1",
                    "recoveryAction": "REGENERATE_ARTIFACTS",
                })

        contract_stored = False
        logger.info("[WORKFLOW:%s] Generating contract for order %s", correlation_id, order.order_code)
        details = get_order_details_for_contract(db, order.workspace_id, order.id)
        contract = await contract_service.generate_and_send_contract(build_contract_data(details))
        summary["contract"] = contract.to_dict()

        if contract.success and contract.url:
            contract_stored = True
            update_contract_url(db, order, contract.url, contract.email.message_id if contract.email else None)
            logger.info(
                "[WORKFLOW:%s] Contract generated: %s, email: %s",
                correlation_id, contract.url, contract.email.status if contract.email else "skipped",
            )
            if contract.email and contract.email.status == "failed":
                await alert(settings, {
                    "event": "CONTRACT_EMAIL_FAILED",
                    "orderCode": order.order_code,
                    "error": contract.email.error,
                    "correlationId": correlation_id,
                    "alertLevel": "P1",
                    "recoveryAction": "RESEND_CONTRACT_EMAIL",
                })
        else:
            logger.warning(
                "[WORKFLOW:%s] Contract generation incomplete: %s", correlation_id, ", ".join(contract.errors)
            )
            await alert(settings, {
                "event": "CONTRACT_GENERATION_INCOMPLETE",
                "orderCode": order.order_code,
                "errors": contract.errors,
                "correlationId": correlation_id,
                "alertLevel": "P1",
                "recoveryAction": "REGENERATE_ARTIFACTS",
            })

        if summary["treesFailed"] == 0 and contract_stored:
            mark_order_completed(db, order)
            summary["completed"] = True

        logger.info(
            "[WORKFLOW:%s] Post-payment workflow finished for order %s (%s/%s trees)",
            correlation_id, order.order_code, len(get_trees_for_order(db, order.id)), order.quantity,
        )
    except Exception as e:
        logger.exception("[WORKFLOW:%s] Post-payment workflow failed for order %s", correlation_id, order_code)
        await alert(settings, {
            "event": "POST_PAYMENT_WORKFLOW_ERROR",
            "orderId": order_id,
            "orderCode": order_code,
            "correlationId": correlation_id,
            "error": str(e),
            "alertLevel": "P0",
            "recoveryAction": "REGENERATE_ARTIFACTS",
        })

    return summary
