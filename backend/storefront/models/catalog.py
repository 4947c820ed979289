from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow


product_categories = db.Table(
    "product_categories",
    db.Column("product_id", db.Integer, db.ForeignKey("products.id"), primary_key=True),
    db.Column("category_id", db.Integer, db.ForeignKey("categories.id"), primary_key=True),
)


class Category(db.Model):
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Catalog product as seen by the pricing core.

    Catalog administration lives elsewhere; checkout only reads id, price
    and category memberships, and freezes the price into the order line.
    """
    __tablename__ = "products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    is_visible = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    categories = db.relationship(
        "Category",
        secondary=product_categories,
        lazy="selectin",
        backref=db.backref("products", lazy=True),
    )

    @property
    def category_ids(self) -> set[int]:
        return {c.id for c in self.categories}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "is_visible": self.is_visible,
            "category_ids": sorted(self.category_ids),
            "created_at": to_utc_z(self.created_at),
        }
