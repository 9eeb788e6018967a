from django.urls import path

from .views import CouponCollectionView, CouponDetailView, CouponValidateView

app_name = "coupons"

urlpatterns = [
    path("", CouponCollectionView.as_view(), name="coupons-collection"),  # GET list / POST create (admin)
    path("validate/", CouponValidateView.as_view(), name="coupons-validate"),
    path("<str:code>/", CouponDetailView.as_view(), name="coupons-detail"),
]
