"""Customer model."""
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from estimator.database import Base


class Customer(Base):
    """Customer (client) with a client-generated CUS-###### identifier."""

    __tablename__ = 'customers'

    customerid = Column(String(20), primary_key=True)
    customername = Column(String(200), nullable=False)
    address = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(50), nullable=True)
    zip = Column(String(20), nullable=True)
    contactemail = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    createdon = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    estimates = relationship('Estimate', back_populates='customer')

    def address_fields(self):
        """Address as the location mapping used for estimate site fields."""
        return {
            'address': self.address or '',
            'city': self.city or '',
            'state': self.state or '',
            'zip': self.zip or '',
        }

    def __repr__(self):
        return f"<Customer(customerid='{self.customerid}', name='{self.customername}')>"
