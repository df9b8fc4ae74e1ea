"""
SQLite registry store for RegistryMatch.

Holds registry entries, aliases, normalization rules, the administrative
region reference and the institution records used for grouping. It serves
as the rule source for the RuleStore and the registry source for candidate
retrieval.
"""

import json
import sqlite3
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import pandas as pd

from ..errors import DependencyError, InputValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    """Canonical registry record; canonical_name is stored normalized."""

    seq: int
    standard_code: str
    canonical_name: str
    address_hash: Optional[str] = None
    region_code: Optional[str] = None
    is_active: bool = True
    aliases: tuple = field(default=(), compare=False)


class RegistryStore:
    """
    Registry, alias and reference-data store backed by SQLite.

    Every operation opens its own connection; read failures are raised as
    DependencyError so callers can retry.
    """

    def __init__(self, db_path: str = "data/registry.db"):
        """
        Initialize registry store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info(f"Initialized RegistryStore at {db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_database(self):
        """Create tables when missing."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS institution_registry (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                standard_code TEXT NOT NULL UNIQUE,
                canonical_name TEXT NOT NULL,
                address_hash TEXT,
                region_code TEXT,
                is_active INTEGER DEFAULT 1,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS institution_aliases (
                alias_id INTEGER PRIMARY KEY AUTOINCREMENT,
                standard_code TEXT NOT NULL REFERENCES institution_registry(standard_code),
                alias_name TEXT NOT NULL,
                source TEXT,
                source_address TEXT,
                normalization_applied INTEGER DEFAULT 0,
                address_matched INTEGER DEFAULT 0,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS normalization_rules (
                rule_id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_name TEXT NOT NULL,
                rule_type TEXT NOT NULL,
                rule_spec TEXT,
                priority INTEGER DEFAULT 0,
                is_active INTEGER DEFAULT 1
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS administrative_regions (
                region_code TEXT PRIMARY KEY,
                short_name TEXT NOT NULL,
                korean_name TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS target_institutions (
                institution_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                region TEXT,
                sub_region TEXT,
                division TEXT,
                sub_division TEXT,
                address TEXT,
                equipment_count INTEGER DEFAULT 0,
                matched_count INTEGER DEFAULT 0,
                unmatched_count INTEGER DEFAULT 0,
                is_master INTEGER DEFAULT 0,
                seq INTEGER
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_registry_region ON institution_registry(region_code)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_aliases_code ON institution_aliases(standard_code)')

        conn.commit()
        conn.close()

    # Rule source

    def load_rules(self) -> List[Dict[str, Any]]:
        """
        Load stored normalization rule rows.

        Returns:
            Rule rows with rule_spec as JSON text

        Raises:
            DependencyError: Database cannot be read
        """
        try:
            conn = self._connect()
            try:
                rows = conn.execute('''
                    SELECT rule_id, rule_name, rule_type, rule_spec, priority, is_active
                    FROM normalization_rules
                ''').fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise DependencyError(f"Failed to load normalization rules: {e}") from e

        return [dict(row) for row in rows]

    def load_region_mappings(self) -> Dict[str, str]:
        """
        Load the abbreviation to canonical region name mapping.

        Returns:
            Mapping with short names and canonical names (mapping to themselves)

        Raises:
            DependencyError: Database cannot be read
        """
        try:
            conn = self._connect()
            try:
                rows = conn.execute('SELECT short_name, korean_name FROM administrative_regions').fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise DependencyError(f"Failed to load administrative regions: {e}") from e

        mappings = {}
        for row in rows:
            mappings[row["short_name"]] = row["korean_name"]
            mappings[row["korean_name"]] = row["korean_name"]
        return mappings

    def add_rule(self, rule_name: str, rule_type: str, rule_spec: Optional[Dict] = None,
                 priority: int = 0, is_active: bool = True) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute('''
                INSERT INTO normalization_rules (rule_name, rule_type, rule_spec, priority, is_active)
                VALUES (?, ?, ?, ?, ?)
            ''', [rule_name, rule_type, json.dumps(rule_spec or {}, ensure_ascii=False), priority, int(is_active)])
            conn.commit()
            rule_id = cursor.lastrowid
        finally:
            conn.close()

        logger.info(f"Added normalization rule {rule_id} ({rule_type}: {rule_name})")
        return rule_id

    def add_region(self, region_code: str, short_name: str, korean_name: str):
        conn = self._connect()
        try:
            conn.execute('''
                INSERT OR REPLACE INTO administrative_regions (region_code, short_name, korean_name)
                VALUES (?, ?, ?)
            ''', [region_code, short_name, korean_name])
            conn.commit()
        finally:
            conn.close()

    # Registry entries and aliases

    def add_entry(self, standard_code: str, canonical_name: str,
                  address_hash: Optional[str] = None,
                  region_code: Optional[str] = None,
                  is_active: bool = True) -> RegistryEntry:
        """
        Insert a registry entry.

        Args:
            standard_code: Unique, immutable standard code
            canonical_name: Normalized canonical name
            address_hash: Address hash
            region_code: Region code
            is_active: Active flag

        Returns:
            Stored entry

        Raises:
            InputValidationError: Standard code already registered
        """
        conn = self._connect()
        try:
            cursor = conn.execute('''
                INSERT INTO institution_registry (standard_code, canonical_name, address_hash, region_code, is_active)
                VALUES (?, ?, ?, ?, ?)
            ''', [standard_code, canonical_name, address_hash, region_code, int(is_active)])
            conn.commit()
            seq = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise InputValidationError(f"Standard code {standard_code} is already registered") from e
        finally:
            conn.close()

        logger.info(f"Registered {standard_code} as '{canonical_name}'")
        return RegistryEntry(seq, standard_code, canonical_name, address_hash, region_code, is_active)

    def get_entry(self, standard_code: str) -> Optional[RegistryEntry]:
        try:
            conn = self._connect()
            try:
                row = conn.execute('''
                    SELECT seq, standard_code, canonical_name, address_hash, region_code, is_active
                    FROM institution_registry WHERE standard_code = ?
                ''', [standard_code]).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise DependencyError(f"Failed to read registry entry {standard_code}: {e}") from e

        if row is None:
            return None
        return RegistryEntry(
            seq=row["seq"],
            standard_code=row["standard_code"],
            canonical_name=row["canonical_name"],
            address_hash=row["address_hash"],
            region_code=row["region_code"],
            is_active=bool(row["is_active"])
        )

    def list_entries_with_aliases(self, region_code: Optional[str] = None) -> List[RegistryEntry]:
        """
        List active entries with their alias texts, in registration order.

        Args:
            region_code: Restrict to this region when given

        Returns:
            Registry entries ordered by seq

        Raises:
            DependencyError: Database cannot be read
        """
        query = '''
            SELECT seq, standard_code, canonical_name, address_hash, region_code, is_active
            FROM institution_registry WHERE is_active = 1
        '''
        params = []
        if region_code:
            query += " AND region_code = ?"
            params.append(region_code)
        query += " ORDER BY seq"

        try:
            conn = self._connect()
            try:
                rows = conn.execute(query, params).fetchall()
                alias_rows = conn.execute('''
                    SELECT standard_code, alias_name FROM institution_aliases ORDER BY alias_id
                ''').fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise DependencyError(f"Failed to list registry entries: {e}") from e

        aliases: Dict[str, List[str]] = {}
        for alias_row in alias_rows:
            aliases.setdefault(alias_row["standard_code"], []).append(alias_row["alias_name"])

        return [
            RegistryEntry(
                seq=row["seq"],
                standard_code=row["standard_code"],
                canonical_name=row["canonical_name"],
                address_hash=row["address_hash"],
                region_code=row["region_code"],
                is_active=bool(row["is_active"]),
                aliases=tuple(aliases.get(row["standard_code"], []))
            )
            for row in rows
        ]

    def add_alias(self, standard_code: str, alias_name: str, source: Optional[str] = None,
                  source_address: Optional[str] = None, normalization_applied: bool = False,
                  address_matched: bool = False) -> int:
        """
        Append an alias for an existing entry.

        Returns:
            Alias id

        Raises:
            InputValidationError: Unknown standard code
        """
        conn = self._connect()
        try:
            cursor = conn.execute('''
                INSERT INTO institution_aliases
                (standard_code, alias_name, source, source_address, normalization_applied, address_matched)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', [standard_code, alias_name, source, source_address,
                  int(normalization_applied), int(address_matched)])
            conn.commit()
            alias_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise InputValidationError(f"Unknown standard code {standard_code}") from e
        finally:
            conn.close()

        logger.info(f"Added alias '{alias_name}' for {standard_code}")
        return alias_id

    def get_aliases(self, standard_code: str) -> pd.DataFrame:
        conn = sqlite3.connect(self.db_path)
        df = pd.read_sql_query('''
            SELECT * FROM institution_aliases WHERE standard_code = ? ORDER BY alias_id
        ''', conn, params=[standard_code])
        conn.close()
        return df

    def count_active_entries(self) -> int:
        conn = self._connect()
        try:
            return conn.execute('SELECT COUNT(*) FROM institution_registry WHERE is_active = 1').fetchone()[0]
        finally:
            conn.close()

    def count_aliases(self) -> int:
        conn = self._connect()
        try:
            return conn.execute('SELECT COUNT(*) FROM institution_aliases').fetchone()[0]
        finally:
            conn.close()

    def coverage_by_region(self) -> pd.DataFrame:
        """
        Registry coverage per region.

        Returns:
            DataFrame with region_code, total_entries and total_aliases
        """
        conn = sqlite3.connect(self.db_path)
        df = pd.read_sql_query('''
            SELECT
                r.region_code,
                COUNT(DISTINCT r.standard_code) as total_entries,
                COUNT(a.alias_id) as total_aliases
            FROM institution_registry r
            LEFT JOIN institution_aliases a ON a.standard_code = r.standard_code
            WHERE r.is_active = 1
            GROUP BY r.region_code
            ORDER BY total_entries DESC
        ''', conn)
        conn.close()
        return df

    # Grouping members

    def add_target_institution(self, institution_id: str, name: str, region: Optional[str] = None,
                               sub_region: Optional[str] = None, division: Optional[str] = None,
                               sub_division: Optional[str] = None, address: Optional[str] = None,
                               equipment_count: int = 0, matched_count: int = 0,
                               unmatched_count: int = 0, is_master: bool = False):
        conn = self._connect()
        try:
            next_seq = conn.execute('SELECT COALESCE(MAX(seq), 0) + 1 FROM target_institutions').fetchone()[0]
            conn.execute('''
                INSERT OR REPLACE INTO target_institutions
                (institution_id, name, region, sub_region, division, sub_division, address,
                 equipment_count, matched_count, unmatched_count, is_master, seq)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', [institution_id, name, region, sub_region, division, sub_division, address,
                  equipment_count, matched_count, unmatched_count, int(is_master), next_seq])
            conn.commit()
        finally:
            conn.close()

    def list_group_members(self, region: Optional[str] = None,
                           sub_region: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Institution records within a grouping scope, in scope order.

        Args:
            region: Region filter
            sub_region: Sub-region filter

        Returns:
            Member rows as dictionaries

        Raises:
            DependencyError: Database cannot be read
        """
        query = "SELECT * FROM target_institutions WHERE 1=1"
        params = []

        if region:
            query += " AND region = ?"
            params.append(region)

        if sub_region:
            query += " AND sub_region = ?"
            params.append(sub_region)

        query += " ORDER BY seq"

        try:
            conn = self._connect()
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise DependencyError(f"Failed to load group members: {e}") from e

        return [dict(row) for row in rows]
