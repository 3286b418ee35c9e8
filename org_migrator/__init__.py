"""
Org Migrator

Template-driven migration of configuration records between two
Salesforce-style organizations.

Supports:
- Declarative multi-step ETL templates loaded from JSON
- Durable external-ID identity across orgs, including managed and
  unmanaged package naming
- Cross-org lookup resolution and record type mapping
- Pre-flight validation of dependencies, data integrity and picklists
- Batched loading with rollback of every tracked write on failure
"""

__version__ = "0.1.0"
