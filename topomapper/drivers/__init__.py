"""Vendor drivers.

Importing this package triggers driver registration via @register_driver.
``generic`` is imported last so that it loses every confidence tie.
"""

import topomapper.drivers.routeros  # noqa: F401
import topomapper.drivers.zyxel  # noqa: F401
import topomapper.drivers.ruckus  # noqa: F401
import topomapper.drivers.ubiquiti  # noqa: F401
import topomapper.drivers.inteno  # noqa: F401
import topomapper.drivers.threecom  # noqa: F401
import topomapper.drivers.generic  # noqa: F401
