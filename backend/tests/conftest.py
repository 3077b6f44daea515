"""
Shared fixtures for the Procurement Hub test suite.
"""
import pytest
from mongomock_motor import AsyncMongoMockClient


@pytest.fixture
def db():
    """A fresh in-memory Mongo database per test."""
    return AsyncMongoMockClient()["procurement_hub_test"]


@pytest.fixture
def users():
    """Active approvers for company C1, location L1."""
    return [
        {"id": "U-LOC", "name": "Lena Location", "email": "loc@example.com",
         "role": "LOCATION_ADMIN", "company_id": "C1", "location_id": "L1", "is_active": True},
        {"id": "U-CA", "name": "Cal Company", "email": "ca@example.com",
         "role": "COMPANY_ADMIN", "company_id": "C1", "is_active": True},
        {"id": "U-EMP", "name": "Eve Employee", "email": "eve@example.com",
         "role": "EMPLOYEE", "company_id": "C1", "location_id": "L1", "is_active": True},
    ]
