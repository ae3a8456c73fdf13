"""
Partscan — partition-function inventory for SQL Server.

Partscan connects to one or more SQL Server instances, walks the accessible
databases on each, and reports every partition function it finds together
with the computer, instance and database it came from.

License: MIT
"""

__version__ = "0.1.0"
