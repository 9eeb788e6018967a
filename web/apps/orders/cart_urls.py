from django.urls import path

from .views import CartCouponView, CartItemDetailView, CartItemsView, CartView

app_name = "cart"

urlpatterns = [
    path("", CartView.as_view(), name="cart"),
    path("items/", CartItemsView.as_view(), name="cart-items"),
    path("items/<str:sku>/", CartItemDetailView.as_view(), name="cart-item"),
    path("coupon/", CartCouponView.as_view(), name="cart-coupon"),
]
