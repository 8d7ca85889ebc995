"""Enumerations shared by processes, steps and executors."""

from __future__ import annotations

from enum import IntEnum


class ProcessTypeId(IntEnum):
    """Kinds of workflows a process can represent."""

    SETUP_DIM = 1
    CREATE_TECHNICAL_USER = 2
    DELETE_TECHNICAL_USER = 3


class ProcessStepTypeId(IntEnum):
    """Step kinds. Numeric order is the execution order within a process."""

    # tenant setup
    CREATE_SUBACCOUNT = 1
    CREATE_SERVICEMANAGER_BINDINGS = 2
    ASSIGN_ENTITLEMENTS = 3
    CREATE_SERVICE_INSTANCE = 4
    CREATE_SERVICE_BINDING = 5
    SUBSCRIBE_APPLICATION = 6
    CREATE_CLOUD_FOUNDRY_ENVIRONMENT = 7
    CREATE_CLOUD_FOUNDRY_SPACE = 8
    ADD_SPACE_MANAGER_ROLE = 9
    ADD_SPACE_DEVELOPER_ROLE = 10
    CREATE_DIM_SERVICE_INSTANCE = 11
    CREATE_SERVICE_INSTANCE_BINDING = 12
    GET_DIM_DETAILS = 13
    CREATE_APPLICATION = 14
    CREATE_COMPANY_IDENTITY = 15
    ASSIGN_COMPANY_APPLICATION = 16
    CREATE_STATUS_LIST = 17
    SEND_CALLBACK = 18

    # technical user creation
    CREATE_TECHNICAL_USER = 100
    GET_TECHNICAL_USER_DATA = 101
    SEND_TECHNICAL_USER_CREATION_CALLBACK = 102

    # technical user deletion
    DELETE_TECHNICAL_USER = 200
    SEND_TECHNICAL_USER_DELETION_CALLBACK = 201


class ProcessStepStatusId(IntEnum):
    """Lifecycle status of a single step."""

    TODO = 1
    DONE = 2
    SKIPPED = 3
    FAILED = 4
    DUPLICATE = 5

    @property
    def is_terminal(self) -> bool:
        return self is not ProcessStepStatusId.TODO


def parse_enum(enum_cls, value: str | int):
    """Resolve ``value`` by member name (case-insensitive) or numeric value."""
    if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
        return enum_cls(int(value))
    try:
        return enum_cls[value.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown {enum_cls.__name__}: {value}") from None
