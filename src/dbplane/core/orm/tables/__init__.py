"""ORM table package: re-exports all mapped tables.

    from dbplane.core.orm.tables import ProcessTable, NodeTable
"""

from dbplane.core.orm.tables.engine import (  # noqa: F401
    ProcessTable,
    SignalTable,
)
from dbplane.core.orm.tables.pages import PageTable  # noqa: F401
from dbplane.core.orm.tables.cluster import (  # noqa: F401
    NodeTable,
    ResourceTable,
    VmTable,
)
from dbplane.core.orm.tables.timeline import TimelineTable  # noqa: F401
from dbplane.core.orm.tables.doctor import (  # noqa: F401
    DoctorTable,
    IncidentTable,
    QueryTable,
)
