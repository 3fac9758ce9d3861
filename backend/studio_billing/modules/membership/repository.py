"""Repositories for membership plans and students.

These are the narrow contracts the billing core consumes: plan lookup by
processor price id and student lookup by customer or subscription id.
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_billing.modules.membership.models import MembershipPlan, Student


class MembershipPlanRepository:
    """Repository for membership plan operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(
        self, plan_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Optional[MembershipPlan]:
        result = await self.session.execute(
            select(MembershipPlan).where(
                MembershipPlan.id == plan_id,
                MembershipPlan.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_by_external_price_id(
        self, tenant_id: uuid.UUID, price_id: Optional[str]
    ) -> Optional[MembershipPlan]:
        """Get the tenant's plan billed with a processor price."""
        if not price_id:
            return None
        result = await self.session.execute(
            select(MembershipPlan)
            .where(
                MembershipPlan.tenant_id == tenant_id,
                MembershipPlan.stripe_price_id == price_id,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_tenant(self, tenant_id: uuid.UUID) -> list[MembershipPlan]:
        result = await self.session.execute(
            select(MembershipPlan)
            .where(MembershipPlan.tenant_id == tenant_id)
            .order_by(MembershipPlan.monthly_price)
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> MembershipPlan:
        plan = MembershipPlan(**kwargs)
        self.session.add(plan)
        await self.session.commit()
        await self.session.refresh(plan)
        return plan


class StudentRepository:
    """Repository for student operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, student_id: uuid.UUID, tenant_id: uuid.UUID) -> Optional[Student]:
        result = await self.session.execute(
            select(Student).where(Student.id == student_id, Student.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def find_by_customer_id(
        self, customer_id: str, tenant_id: Optional[uuid.UUID] = None
    ) -> Optional[Student]:
        """Get the student billed as a processor customer, optionally within a tenant."""
        query = select(Student).where(Student.stripe_customer_id == customer_id)
        if tenant_id is not None:
            query = query.where(Student.tenant_id == tenant_id)
        result = await self.session.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def find_by_subscription_id(self, subscription_id: str) -> Optional[Student]:
        result = await self.session.execute(
            select(Student).where(Student.stripe_subscription_id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def list_with_subscription(self, tenant_id: uuid.UUID) -> list[Student]:
        result = await self.session.execute(
            select(Student).where(
                Student.tenant_id == tenant_id,
                Student.stripe_subscription_id.is_not(None),
            )
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> Student:
        student = Student(**kwargs)
        self.session.add(student)
        await self.session.commit()
        await self.session.refresh(student)
        return student

    async def update(self, student_id: uuid.UUID, **kwargs) -> Optional[Student]:
        """Re-read the student and apply only the given fields."""
        result = await self.session.execute(
            select(Student).where(Student.id == student_id).execution_options(populate_existing=True)
        )
        student = result.scalar_one_or_none()
        if not student:
            return None
        for key, value in kwargs.items():
            if hasattr(student, key):
                setattr(student, key, value)
        await self.session.commit()
        await self.session.refresh(student)
        return student
