"""Payment package a contract is bought against."""

from sqlalchemy import Column, Integer, Numeric, String
import ulid

from ..database import Base


class PaymentPackage(Base):
    __tablename__ = "payment_packages"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    name = Column(String(255), nullable=False)
    price = Column(Numeric(14, 2), nullable=False)
    session_count = Column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<PaymentPackage {self.name} sessions={self.session_count}>"
