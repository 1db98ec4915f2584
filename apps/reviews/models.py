from django.db import models
from django.core.validators import MinValueValidator, MaxValueValidator
from apps.core.models import BaseModel
from apps.accounts.models import Account
from apps.bookings.models import Booking
from apps.services.models import Service


class Review(BaseModel):
    """
    A client's rating of a completed booking. One per booking.
    Service.avg_rating is recomputed from these by the 'ratings' periodic task.
    """
    booking = models.OneToOneField(Booking, on_delete=models.PROTECT, related_name='review')
    service = models.ForeignKey(Service, on_delete=models.CASCADE, related_name='reviews')
    client = models.ForeignKey(Account, on_delete=models.CASCADE, related_name='reviews_written')
    rating = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(5)],
    )
    comment = models.TextField(blank=True)
    is_published = models.BooleanField(default=True)

    class Meta:
        verbose_name = 'Review'
        verbose_name_plural = 'Reviews'
        ordering = ['-created_at']
        constraints = [
            models.CheckConstraint(
                condition=models.Q(rating__gte=1, rating__lte=5),
                name='ck_review_rating_range',
            ),
        ]

    def __str__(self):
        return f"Review from {self.client.name} — {self.rating}★ {self.service.title}"
