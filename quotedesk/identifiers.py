"""Quote/order numbers and URL slugs.

Two uniqueness policies live side by side. Document numbers are
random and never checked against storage, so a collision is possible and
surfaces as a failed insert. Slugs are checked against storage and suffixed
with ``-1``, ``-2``, ... until free.
"""
from __future__ import annotations

import random
import re
from datetime import datetime
from typing import Callable

SlugExists = Callable[[str, int | None], bool]

MAX_SLUG_ATTEMPTS = 1000


class UncheckedRandomId:
    def __init__(
        self,
        prefix: str,
        *,
        digits: int = 4,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.prefix = prefix
        self.digits = digits
        self.rng = rng or random.Random()
        self.clock = clock

    def generate(self) -> str:
        now = self.clock()
        number = self.rng.randrange(10**self.digits)
        return f"{self.prefix}-{now:%Y%m}-{number:0{self.digits}d}"


class RetryUntilUniqueSlug:
    def __init__(self, exists: SlugExists, *, max_attempts: int = MAX_SLUG_ATTEMPTS) -> None:
        self.exists = exists
        self.max_attempts = max_attempts

    def generate(self, base_slug: str, exclude_id: int | None = None) -> str:
        slug = base_slug
        for counter in range(1, self.max_attempts + 1):
            if not self.exists(slug, exclude_id):
                return slug
            slug = f"{base_slug}-{counter}"
        raise RuntimeError(f"No free slug found for '{base_slug}' after {self.max_attempts} attempts")


class IdentifierGenerator:
    def __init__(
        self,
        quote_numbers: UncheckedRandomId,
        order_numbers: UncheckedRandomId,
        slugs: RetryUntilUniqueSlug,
    ) -> None:
        self.quote_numbers = quote_numbers
        self.order_numbers = order_numbers
        self.slugs = slugs

    def quote_number(self) -> str:
        return self.quote_numbers.generate()

    def order_number(self) -> str:
        return self.order_numbers.generate()

    def unique_slug(self, base_slug: str, exclude_id: int | None = None) -> str:
        return self.slugs.generate(base_slug, exclude_id)


def slugify(title: str) -> str:
    slug = (title or "").lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip()
