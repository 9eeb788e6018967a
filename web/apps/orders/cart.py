"""Cart operations: adding products and applying a coupon.

Line prices are captured from the stock store when a product is added. The
coupon discount stored on the cart is only a preview for the customer; the
order lifecycle evaluates the coupon again when the order is placed.
"""

import logging
from typing import Optional

from .coupons import CouponEvaluator
from .domain import Cart, InventoryPort
from .errors import CouponNotApplicable, NotFoundError, OutOfStock, ValidationError

logger = logging.getLogger(__name__)


class CartService:
    """Cart use cases on top of the cart, stock and coupon stores.

    Args:
        carts: ORM cart store (``CartRepository``) or the in-memory one.
        inventory: Stock store used to price lines.
        evaluator: Coupon evaluator; its store resolves coupon codes.
    """

    def __init__(self, *, carts, inventory: InventoryPort, evaluator: CouponEvaluator):
        self.carts = carts
        self.inventory = inventory
        self.evaluator = evaluator

    def get(self, user_id: int) -> Cart:
        return self.carts.get(user_id)

    def add_item(self, user_id: int, sku: str, quantity: int = 1, variant: Optional[str] = None) -> Cart:
        """Add ``quantity`` units of ``sku`` at its current price.

        Raises:
            ValidationError: Quantity below one.
            NotFoundError: Unknown product.
            OutOfStock: The product is out of stock.
        """
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", code="INVALID_QUANTITY")
        product = self.inventory.get_products([sku]).get(sku)
        if product is None:
            raise NotFoundError(f"product {sku} not found", code="PRODUCT_NOT_FOUND")
        if not product.in_stock:
            raise OutOfStock([sku])
        self.carts.add_item(user_id, sku, quantity, product.effective_price, variant)
        return self._refresh_coupon(user_id)

    def update_quantity(self, user_id: int, sku: str, quantity: int) -> Cart:
        """Set the quantity of a cart line, repricing it from the stock store.

        Raises:
            ValidationError: Quantity below one.
            NotFoundError: The line is not in the cart or the product is gone.
            OutOfStock: A tracked product has fewer units than asked for.
        """
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", code="INVALID_QUANTITY")
        if not any(line.sku == sku for line in self.carts.get(user_id).lines):
            raise NotFoundError(f"{sku} is not in the cart", code="CART_ITEM_NOT_FOUND")
        product = self.inventory.get_products([sku]).get(sku)
        if product is None:
            raise NotFoundError(f"product {sku} not found", code="PRODUCT_NOT_FOUND")
        if product.track_inventory and product.stock < quantity:
            raise OutOfStock([sku])
        self.carts.set_quantity(user_id, sku, quantity, product.effective_price)
        return self._refresh_coupon(user_id)

    def remove_item(self, user_id: int, sku: str) -> Cart:
        if not self.carts.remove_item(user_id, sku):
            raise NotFoundError(f"{sku} is not in the cart", code="CART_ITEM_NOT_FOUND")
        return self._refresh_coupon(user_id)

    def clear(self, user_id: int) -> Cart:
        self.carts.clear(user_id)
        return self.carts.get(user_id)

    def apply_coupon(self, user_id: int, code: str) -> Cart:
        """Attach a coupon after checking it against the current cart total.

        Raises:
            CouponNotApplicable: Unknown code or the coupon does not apply.
        """
        coupon, evaluation = self.check_coupon(user_id, code)
        self.carts.set_coupon(user_id, coupon.code, evaluation.discount_amount)
        logger.info("coupon applied to cart", extra={"user_id": user_id, "coupon": coupon.code})
        return self.carts.get(user_id)

    def check_coupon(self, user_id: int, code: str, cart_total: Optional[int] = None):
        """Evaluate a coupon for the user without touching the cart.

        Args:
            user_id: Redeeming user.
            code: Coupon code.
            cart_total: Total to check against; the user's cart total when omitted.

        Returns:
            tuple: The coupon and its (valid) ``CouponEvaluation``.

        Raises:
            CouponNotApplicable: Unknown code or the coupon does not apply.
        """
        coupon = self.evaluator.coupons.get(code)
        if coupon is None:
            raise CouponNotApplicable("coupon not found", code="COUPON_NOT_FOUND")
        if cart_total is None:
            cart_total = self.carts.get(user_id).total
        evaluation = self.evaluator.evaluate(coupon, cart_total, user_id)
        if not evaluation.valid:
            raise CouponNotApplicable(evaluation.reason or "coupon not applicable")
        return coupon, evaluation

    def remove_coupon(self, user_id: int) -> Cart:
        self.carts.set_coupon(user_id, None, 0)
        return self.carts.get(user_id)

    def _refresh_coupon(self, user_id: int) -> Cart:
        """Recompute the coupon preview after the lines changed; drop it if it no longer applies."""
        cart = self.carts.get(user_id)
        if not cart.coupon_code:
            return cart
        coupon = self.evaluator.coupons.get(cart.coupon_code)
        evaluation = self.evaluator.evaluate(coupon, cart.total, user_id) if coupon else None
        if evaluation is None or not evaluation.valid:
            self.carts.set_coupon(user_id, None, 0)
        else:
            self.carts.set_coupon(user_id, cart.coupon_code, evaluation.discount_amount)
        return self.carts.get(user_id)
