"""
Test Suite Configuration
"""
from datetime import date
from decimal import Decimal

import pytest
import polars as pl

from retail_metrics.config import Settings
from retail_metrics.models import OrderLine


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
    )


def _make_line(
    order_id: int = 1,
    line_no: int = 1,
    quantity=1,
    net_price="100",
    unit_cost="30",
    product_id: int = 1,
    customer_id: int = 1,
    order_date: date = date(2023, 1, 15),
    exchange_rate="1",
) -> OrderLine:
    """Build an OrderLine with Decimal prices"""
    def as_decimal(value):
        return None if value is None else Decimal(str(value))

    return OrderLine(
        order_id=order_id,
        line_no=line_no,
        product_id=product_id,
        customer_id=customer_id,
        order_date=order_date,
        quantity=quantity,
        unit_price=as_decimal(net_price),
        net_price=as_decimal(net_price),
        unit_cost=as_decimal(unit_cost),
        exchange_rate=as_decimal(exchange_rate),
    )


@pytest.fixture
def sample_sales_df() -> pl.DataFrame:
    """Create sample order lines for testing"""
    return pl.DataFrame({
        "order_id": [1, 1, 2, 3, 4, 5, 6],
        "line_no": [1, 2, 1, 1, 1, 1, 1],
        "product_id": [10, 20, 11, 30, 10, 20, 99],
        "customer_id": [100, 100, 101, 102, 103, 104, 100],
        "order_date": [
            date(2023, 1, 5),
            date(2023, 1, 5),
            date(2023, 2, 10),
            date(2024, 1, 20),
            date(2024, 3, 3),
            date(2024, 3, 18),
            date(2024, 3, 25),
        ],
        "quantity": [2, 1, 1, 3, 1, 2, 1],
        "unit_price": [100.0, 50.0, 400.0, 20.0, 100.0, 50.0, 10.0],
        "net_price": [100.0, 50.0, 400.0, 20.0, 100.0, 50.0, 10.0],
        "unit_cost": [30.0, 45.0, 240.0, 5.0, 60.0, 20.0, 4.0],
        "exchange_rate": [1.0, 1.0, 1.0, 0.9, 1.0, 1.0, 1.0],
    })


@pytest.fixture
def sample_products_df() -> pl.DataFrame:
    """Create sample product hierarchy for testing"""
    return pl.DataFrame({
        "product_id": [10, 11, 20, 30],
        "product_name": ["WWI Desktop PC", "Contoso Laptop", "Fabrikam Camera", "Litware Speaker"],
        "subcategory": ["Desktops", "Laptops", "Digital Cameras", "Speakers"],
        "category": ["Computers", "Computers", "Cameras", "Audio"],
    })


@pytest.fixture
def sample_customers_df() -> pl.DataFrame:
    """Create sample customer hierarchy for testing"""
    return pl.DataFrame({
        "customer_id": [100, 101, 102, 103, 104],
        "state": ["California", "California", "Texas", "Bavaria", "California"],
        "country": ["United States", "United States", "United States", "Germany", "United States"],
        "acquisition_date": [
            date(1985, 6, 1),
            date(1979, 3, 2),
            date(2003, 9, 9),
            date(2018, 1, 1),
            None,
        ],
    })


@pytest.fixture
def make_line():
    """Factory for OrderLine test facts"""
    return _make_line
