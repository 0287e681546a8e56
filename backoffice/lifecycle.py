"""Contract / vehicle / customer lifecycle rules.

This module decides WHAT a lifecycle event changes; it never touches the
database. Each planner takes already-loaded entities (ORM rows or anything
with the same attributes) and returns a LifecyclePlan (the complete set of
mutations that must be applied atomically) or raises Conflict.

    plan = plan_contract_creation(ContractType.PURCHASE, ContractStatus.ACTIVE,
                                  vehicle, customer, open_purchase_contracts=0)
    plan.mutations
    # [VehicleStatusChange(vehicle_id=7, expected_status=ACTIVE, expected_version=3, new_status=RESERVED),
    #  CustomerRoleChange(customer_id=2, from_role=PROSPECT, to_role=BUYER),
    #  CustomerTouch(customer_id=2, expected_version=1)]

services.apply_plan() executes a plan with compare-and-swap writes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .enums import (
    TERMINAL_CONTRACT_STATUSES, ContractStatus, ContractType, CustomerRole,
    CustomerType, LeadStatus, LeadType, VehicleStatus,
)
from .errors import Conflict, ValidationError
from .numbering import format_contract_number
from .utils import split_name

logger = logging.getLogger("lifecycle")


# ── Mutations ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VehicleStatusChange:
    vehicle_id: int
    expected_status: VehicleStatus
    expected_version: int
    new_status: VehicleStatus


@dataclass(frozen=True)
class VehicleTouch:
    """Version bump only; serialises contract writes against one vehicle."""
    vehicle_id: int
    expected_version: int


@dataclass(frozen=True)
class CustomerRoleChange:
    customer_id: int
    from_role: CustomerRole
    to_role: CustomerRole


@dataclass(frozen=True)
class CustomerTouch:
    """Version bump only; serialises new references to a customer against its deletion."""
    customer_id: int
    expected_version: int


@dataclass(frozen=True)
class ContractStatusChange:
    contract_id: int
    from_status: ContractStatus
    to_status: ContractStatus


@dataclass(frozen=True)
class CustomerCreation:
    values: dict[str, Any]


@dataclass(frozen=True)
class LeadCompletion:
    lead_id: int
    from_status: LeadStatus


@dataclass
class LifecyclePlan:
    mutations: list = field(default_factory=list)
    # Set when a lead was converted before; the conversion is a no-op.
    existing_customer_id: int | None = None

    def of_type(self, cls) -> list:
        return [m for m in self.mutations if isinstance(m, cls)]


# ── State definitions ────────────────────────────────────────────────────────

ALLOWED_CONTRACT_TRANSITIONS: dict[ContractStatus, frozenset[ContractStatus]] = {
    ContractStatus.DRAFT: frozenset({ContractStatus.ACTIVE, ContractStatus.COMPLETED, ContractStatus.CANCELLED}),
    ContractStatus.ACTIVE: frozenset({ContractStatus.COMPLETED, ContractStatus.CANCELLED}),
    ContractStatus.COMPLETED: frozenset(),
    ContractStatus.CANCELLED: frozenset(),
}

# Role a prospect takes on once a contract of this type becomes active.
ROLE_ON_ACTIVATION = {
    ContractType.PURCHASE: CustomerRole.BUYER,
    ContractType.ACQUISITION: CustomerRole.SELLER,
}

INITIAL_CONTRACT_STATUSES = frozenset({ContractStatus.DRAFT, ContractStatus.ACTIVE})

SELLABLE_ON_COMPLETION = frozenset({VehicleStatus.ACTIVE, VehicleStatus.RESERVED})
RELEASED_ON_CANCELLATION = frozenset({VehicleStatus.RESERVED, VehicleStatus.SOLD})


# ── Helpers ──────────────────────────────────────────────────────────────────

def _reject(message: str) -> Conflict:
    logger.warning(f"Rejected: {message}")
    return Conflict(message)


def _vehicle_label(vehicle) -> str:
    return f"Vehicle {getattr(vehicle, 'vehicle_number', None) or vehicle.id}"


def _role_change(customer, contract_type: ContractType) -> list:
    to_role = ROLE_ON_ACTIVATION[contract_type]
    if customer is not None and customer.role == CustomerRole.PROSPECT:
        return [CustomerRoleChange(customer.id, CustomerRole.PROSPECT, to_role)]
    return []


def _reserve(vehicle) -> VehicleStatusChange:
    if vehicle.status != VehicleStatus.ACTIVE:
        raise _reject(f"{_vehicle_label(vehicle)} is {vehicle.status.value}, expected ACTIVE")
    return VehicleStatusChange(vehicle.id, VehicleStatus.ACTIVE, vehicle.version, VehicleStatus.RESERVED)


def can_transition(from_status: ContractStatus, to_status: ContractStatus) -> bool:
    if from_status in TERMINAL_CONTRACT_STATUSES:
        return False
    return to_status in ALLOWED_CONTRACT_TRANSITIONS.get(from_status, frozenset())


# ── Planners ─────────────────────────────────────────────────────────────────

def plan_contract_creation(
    contract_type: ContractType,
    status: ContractStatus,
    vehicle,
    customer,
    open_purchase_contracts: int = 0,
) -> LifecyclePlan:
    """Mutations caused by creating a contract.

    Every creation bumps the vehicle and customer versions, so a concurrent
    delete of either one misses its compare-and-swap.

    open_purchase_contracts : number of non-terminal purchase contracts that
                              already reference the vehicle
    """
    if status not in INITIAL_CONTRACT_STATUSES:
        raise ValidationError(
            f"Contracts start as DRAFT or ACTIVE, not {status.value}",
            {"status": "must be DRAFT or ACTIVE"},
        )
    plan = LifecyclePlan()

    if contract_type == ContractType.PURCHASE:
        if open_purchase_contracts > 0:
            raise _reject(f"{_vehicle_label(vehicle)} already has an open purchase contract")
        if status == ContractStatus.ACTIVE:
            plan.mutations.append(_reserve(vehicle))
            plan.mutations.extend(_role_change(customer, contract_type))
        else:
            if vehicle.status == VehicleStatus.SOLD:
                raise _reject(f"{_vehicle_label(vehicle)} is SOLD")
            plan.mutations.append(VehicleTouch(vehicle.id, vehicle.version))
    else:
        # Acquisition: the vehicle enters stock later, its status stays as is.
        plan.mutations.append(VehicleTouch(vehicle.id, vehicle.version))
        if status == ContractStatus.ACTIVE:
            plan.mutations.extend(_role_change(customer, contract_type))

    plan.mutations.append(CustomerTouch(customer.id, customer.version))
    return plan


def plan_contract_transition(contract, target: ContractStatus, vehicle, customer=None) -> LifecyclePlan:
    """Mutations caused by moving a contract to `target`."""
    number = format_contract_number(contract.contract_number)
    if contract.status in TERMINAL_CONTRACT_STATUSES:
        raise _reject(f"Contract {number} is already {contract.status.value}")
    if not can_transition(contract.status, target):
        raise _reject(f"Contract {number} cannot go from {contract.status.value} to {target.value}")

    plan = LifecyclePlan([ContractStatusChange(contract.id, contract.status, target)])

    if contract.type == ContractType.PURCHASE:
        if vehicle is None:
            raise _reject(f"Contract {number} references no vehicle")
        if target == ContractStatus.ACTIVE:
            plan.mutations.append(_reserve(vehicle))
            plan.mutations.extend(_role_change(customer, contract.type))
        elif target == ContractStatus.COMPLETED:
            if vehicle.status not in SELLABLE_ON_COMPLETION:
                raise _reject(f"{_vehicle_label(vehicle)} is {vehicle.status.value} and cannot be sold")
            plan.mutations.append(
                VehicleStatusChange(vehicle.id, vehicle.status, vehicle.version, VehicleStatus.SOLD)
            )
        elif target == ContractStatus.CANCELLED:
            if vehicle.status in RELEASED_ON_CANCELLATION:
                plan.mutations.append(
                    VehicleStatusChange(vehicle.id, vehicle.status, vehicle.version, VehicleStatus.ACTIVE)
                )
            else:
                plan.mutations.append(VehicleTouch(vehicle.id, vehicle.version))
    elif target == ContractStatus.ACTIVE:
        plan.mutations.extend(_role_change(customer, contract.type))

    return plan


def plan_lead_conversion(lead) -> LifecyclePlan:
    """Create a customer from a lead's contact fields and close the lead.

    Converting twice returns the first customer instead of creating another.
    """
    if lead.customer_id is not None:
        return LifecyclePlan(existing_customer_id=lead.customer_id)
    if lead.status == LeadStatus.COMPLETED:
        raise _reject(f"Lead {lead.id} is already completed")

    first_name, last_name = split_name(lead.name)
    role = CustomerRole.SELLER if lead.type == LeadType.ACQUISITION_INQUIRY else CustomerRole.PROSPECT
    notes = f"Converted from {lead.type.value} (lead {lead.id}), name as submitted: {lead.name.strip()}"
    if lead.message:
        notes += f"\n{lead.message}"

    values = {
        "type": CustomerType.PRIVATE,
        "role": role,
        "first_name": first_name,
        "last_name": last_name,
        "email": lead.email,
        "phone": lead.phone,
        "notes": notes,
    }
    return LifecyclePlan([CustomerCreation(values), LeadCompletion(lead.id, lead.status)])
