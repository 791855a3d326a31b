import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import TreeCodeConflict
from .models import Order, Tree
from .utils import now_vn

logger = logging.getLogger("trees")

TREE_CODE_PREFIX = "TREE"


def next_tree_code(db: Session, year: int | None = None) -> str:
    """TREE-YYYY-NNNNN, sequential within the year; widens past 99999."""
    year = year or now_vn().year
    prefix = f"{TREE_CODE_PREFIX}-{year}-"
    # longer codes hold larger sequences, so compare length before text
    last = (
        db.query(Tree.tree_code)
        .filter(Tree.tree_code.like(f"{prefix}%"))
        .order_by(func.length(Tree.tree_code).desc(), Tree.tree_code.desc())
        .first()
    )
    sequence = int(last[0].split("-")[2]) + 1 if last else 1
    return f"{prefix}{sequence:05d}"


def mint_tree(db: Session, order: Order) -> str:
    """
    Claim the next tree code for an order. The unique index on tree_code
    settles races between concurrent minters: the loser gets TreeCodeConflict
    and is expected to try again.
    """
    tree_code = next_tree_code(db)
    db.add(Tree(
        tree_code=tree_code,
        order_id=order.id,
        owner_id=order.buyer_id,
        lot_id=order.lot_id,
        status="SEEDLING",
    ))
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise TreeCodeConflict(f"Tree code {tree_code} already taken") from e
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info("Minted %s for order %s", tree_code, order.order_code)
    return tree_code
