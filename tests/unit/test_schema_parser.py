"""
Unit tests for the DDL parser.
"""

import pytest

from tenantdb.exceptions import ParseWarning
from tenantdb.schema.definitions import ForeignKeyReference
from tenantdb.schema.parser import (
    DDLParser,
    canonical_type,
    mask_string_literals,
    normalize_default,
    split_clauses,
    strip_comments,
)
from tenantdb.schema.sources import SchemaSource, load_bundled_sources


USERS_PROFILES = """
CREATE TABLE IF NOT EXISTS users (
    id uuid primary key,
    email text not null,
    created_at timestamp default now()
);

CREATE TABLE IF NOT EXISTS profiles (
    id uuid primary key,
    user_id uuid references users(id),
    bio text
);
"""


class TestTextHelpers:
    """Test comment stripping, masking and clause splitting."""

    def test_strip_line_and_block_comments(self):
        """Test that both comment styles are removed."""
        text = "a -- trailing\nb /* block\nspanning */ c"
        result = strip_comments(text)

        assert "trailing" not in result
        assert "block" not in result
        assert result.split() == ["a", "b", "c"]

    def test_strip_comments_keeps_string_contents(self):
        """Test that comment markers inside literals survive."""
        text = "x TEXT DEFAULT '--not a comment' -- real comment"
        result = strip_comments(text)

        assert "'--not a comment'" in result
        assert "real comment" not in result

    def test_mask_string_literals_keeps_length(self):
        """Test that masking preserves offsets."""
        text = "DEFAULT 'a, (b)' NOT NULL"
        masked = mask_string_literals(text)

        assert len(masked) == len(text)
        assert masked == "DEFAULT '______' NOT NULL"

    def test_split_clauses_respects_nesting(self):
        """Test that commas inside parentheses, brackets and strings don't split."""
        body = "a NUMERIC(10, 2), b TEXT DEFAULT 'x, y', c TEXT[] DEFAULT ARRAY['p', 'q']"
        clauses = split_clauses(body)

        assert clauses == [
            "a NUMERIC(10, 2)",
            "b TEXT DEFAULT 'x, y'",
            "c TEXT[] DEFAULT ARRAY['p', 'q']",
        ]

    def test_canonical_type(self):
        """Test type canonicalization."""
        assert canonical_type("numeric(10, 2)") == "NUMERIC(10,2)"
        assert canonical_type("timestamp   with time zone") == "TIMESTAMP WITH TIME ZONE"
        assert canonical_type("text [ ]") == "TEXT[]"

    @pytest.mark.parametrize("raw,expected", [
        (None, None),
        ("NULL", None),
        ("now()", "NOW()"),
        ("CURRENT_TIMESTAMP", "NOW()"),
        ("true", "TRUE"),
        ("'active'", "active"),
        ("'it''s'", "it's"),
        ("'{}'::jsonb", "'{}'::jsonb"),
        ("0", "0"),
    ])
    def test_normalize_default(self, raw, expected):
        """Test default normalization."""
        assert normalize_default(raw) == expected


class TestTypeResolution:
    """Test column type recognition."""

    @pytest.mark.parametrize("text,expected", [
        ("uuid primary key", "UUID"),
        ("TIMESTAMP WITH TIME ZONE DEFAULT NOW()", "TIMESTAMP WITH TIME ZONE"),
        ("time with time zone", "TIME WITH TIME ZONE"),
        ("double precision", "DOUBLE PRECISION"),
        ("character varying(255) not null", "CHARACTER VARYING(255)"),
        ("varchar(20)", "VARCHAR(20)"),
        ("decimal(10, 8)", "DECIMAL(10,8)"),
        ("numeric(5)", "NUMERIC(5)"),
        ("text[] default '{}'", "TEXT[]"),
        ("varchar(20)[]", "VARCHAR(20)[]"),
        ("double precision[]", "DOUBLE PRECISION[]"),
        ("character varying(20)[] not null", "CHARACTER VARYING(20)[]"),
        ("timestamp with time zone [ ]", "TIMESTAMP WITH TIME ZONE[]"),
        ("jsonb", "JSONB"),
        ("inet", "INET"),
    ])
    def test_recognized_types(self, text, expected):
        """Test that recognized types resolve to their canonical form."""
        resolved = DDLParser().resolve_type(text)

        assert resolved is not None
        assert resolved[0] == expected

    def test_unrecognized_type(self):
        """Test that unknown type keywords are rejected."""
        assert DDLParser().resolve_type("geometry(point, 4326)") is None
        assert DDLParser().resolve_type("money") is None


class TestParseColumn:
    """Test single column clause parsing."""

    def test_full_column(self):
        """Test a column with every supported attribute."""
        column = DDLParser().parse_column(
            "user_id UUID NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE"
        )

        assert column.name == "user_id"
        assert column.type == "UUID"
        assert column.nullable is False
        assert column.unique is True
        assert column.default is None
        assert column.references == ForeignKeyReference("users", "id")

    def test_default_stops_at_check(self):
        """Test that CHECK ends the default expression."""
        column = DDLParser().parse_column(
            "role TEXT NOT NULL DEFAULT 'employee' CHECK (role IN ('admin', 'employee'))"
        )

        assert column.default == "employee"
        assert column.nullable is False

    def test_keywords_inside_literal_are_ignored(self):
        """Test that NOT NULL inside a string default doesn't count."""
        column = DDLParser().parse_column("note TEXT DEFAULT 'NOT NULL, UNIQUE'")

        assert column.nullable is True
        assert column.unique is False
        assert column.default == "NOT NULL, UNIQUE"

    def test_array_default(self):
        """Test an ARRAY[...] default is kept verbatim."""
        column = DDLParser().parse_column(
            "working_days TEXT[] DEFAULT ARRAY['monday', 'friday']"
        )

        assert column.type == "TEXT[]"
        assert column.default == "ARRAY['monday', 'friday']"

    def test_multi_word_array_types(self):
        """Test arrays of multi-word types keep their array suffix."""
        parser = DDLParser()

        tables = parser.parse(
            "CREATE TABLE IF NOT EXISTS t ("
            "g CHARACTER VARYING(20)[], j DOUBLE PRECISION[] NOT NULL)"
        )

        g, j = tables[0].columns
        assert g.type == "CHARACTER VARYING(20)[]"
        assert j.type == "DOUBLE PRECISION[]"
        assert j.nullable is False
        assert parser.warnings == []

    def test_literal_default_flag(self):
        """Test quoted defaults are marked as literals, expressions are not."""
        parser = DDLParser()

        literal = parser.parse_column("currency TEXT DEFAULT 'USD(1)'")
        expression = parser.parse_column("created_at TIMESTAMP DEFAULT NOW()")

        assert literal.default == "USD(1)"
        assert literal.default_is_literal is True
        assert str(literal) == "currency TEXT DEFAULT 'USD(1)'"
        assert expression.default_is_literal is False

    def test_primary_key_does_not_imply_not_null(self):
        """Test that nullability only reflects an explicit NOT NULL."""
        column = DDLParser().parse_column("id UUID PRIMARY KEY DEFAULT gen_random_uuid()")

        assert column.nullable is True
        assert column.default == "gen_random_uuid()"

    def test_quoted_name_is_lowercased(self):
        """Test quoted column names."""
        column = DDLParser().parse_column('"Display_Name" TEXT')

        assert column.name == "display_name"

    def test_schema_qualified_reference(self):
        """Test that a schema prefix on REFERENCES is dropped."""
        column = DDLParser().parse_column("owner UUID REFERENCES public.users(id)")

        assert column.references == ForeignKeyReference("users", "id")

    def test_reserved_name_warns(self):
        """Test that reserved words are skipped with a warning."""
        parser = DDLParser()

        assert parser.parse_column("key TEXT") is None
        assert len(parser.warnings) == 1
        assert isinstance(parser.warnings[0], ParseWarning)

    def test_unknown_type_warns(self):
        """Test that unrecognized types are skipped with a warning."""
        parser = DDLParser()

        assert parser.parse_column("location GEOMETRY", source="geo.sql") is None
        assert "location" in str(parser.warnings[0])
        assert parser.warnings[0].source == "geo.sql"


class TestParse:
    """Test whole-statement parsing."""

    def test_users_profiles(self):
        """Test the two-table example."""
        tables = DDLParser().parse(USERS_PROFILES)

        assert [t.name for t in tables] == ["users", "profiles"]
        users, profiles = tables
        assert [c.name for c in users.columns] == ["id", "email", "created_at"]
        assert users.columns[1].nullable is False
        assert users.columns[2].default == "NOW()"
        assert profiles.columns[1].references == ForeignKeyReference("users", "id")

    def test_comments_do_not_change_result(self):
        """Test that adding comments leaves the parsed schema unchanged."""
        commented = USERS_PROFILES.replace(
            "email text not null,", "email text not null, -- login, unique (later)"
        ).replace(
            "bio text", "/* free-form ) text */ bio text"
        )

        plain = DDLParser().build_expected_schema([SchemaSource("a.sql", USERS_PROFILES)])
        with_comments = DDLParser().build_expected_schema([SchemaSource("a.sql", commented)])

        assert with_comments.to_dict() == plain.to_dict()

    def test_table_constraints_are_skipped(self):
        """Test that table-level constraints produce no columns."""
        sql = """
        CREATE TABLE leave_requests (
            id UUID,
            start_date DATE NOT NULL,
            end_date DATE NOT NULL,
            PRIMARY KEY (id),
            UNIQUE (start_date, end_date),
            CONSTRAINT dates_ordered CHECK (end_date >= start_date),
            FOREIGN KEY (id) REFERENCES users(id)
        );
        """
        parser = DDLParser()
        tables = parser.parse(sql)

        assert [c.name for c in tables[0].columns] == ["id", "start_date", "end_date"]
        assert parser.warnings == []

    def test_schema_qualified_table(self):
        """Test that the schema prefix is dropped from the table name."""
        tables = DDLParser().parse('CREATE TABLE "tenant"."Projects" (id UUID);')

        assert tables[0].name == "projects"

    def test_create_table_inside_literal_is_ignored(self):
        """Test that CREATE TABLE text inside a string is not a statement."""
        sql = (
            "INSERT INTO notes VALUES ('CREATE TABLE fake (id UUID)');\n"
            "CREATE TABLE real_table (id UUID);"
        )
        tables = DDLParser().parse(sql)

        assert [t.name for t in tables] == ["real_table"]

    def test_unbalanced_statement_warns(self):
        """Test that a truncated statement is skipped with a warning."""
        parser = DDLParser()
        tables = parser.parse("CREATE TABLE broken (id UUID, name TEXT")

        assert tables == []
        assert "Unbalanced" in str(parser.warnings[0])

    def test_table_without_columns_warns(self):
        """Test that a table whose columns were all skipped is dropped."""
        parser = DDLParser()
        tables = parser.parse("CREATE TABLE shapes (outline GEOMETRY);")

        assert tables == []
        assert any("No columns parsed" in str(w) for w in parser.warnings)


class TestBuildExpectedSchema:
    """Test merging sources into an expected schema."""

    def test_first_definition_wins(self):
        """Test that later duplicate columns are ignored."""
        sources = [
            SchemaSource("a.sql", "CREATE TABLE t (x INTEGER NOT NULL);"),
            SchemaSource("b.sql", "CREATE TABLE t (x TEXT, y TEXT);"),
        ]
        expected = DDLParser().build_expected_schema(sources)

        assert expected.get_column("t", "x").type == "INTEGER"
        assert expected.get_column("t", "x").nullable is False
        assert [c.name for c in expected.columns("t")] == ["x", "y"]

    def test_first_definition_wins_within_source(self):
        """Test duplicates inside one source."""
        sources = [SchemaSource("a.sql", "CREATE TABLE t (x INTEGER, x TEXT);")]
        expected = DDLParser().build_expected_schema(sources)

        assert expected.get_column("t", "x").type == "INTEGER"
        assert expected.column_count == 1

    def test_table_order_follows_sources(self):
        """Test tables keep their first-declared order."""
        sources = [
            SchemaSource("b.sql", "CREATE TABLE zeta (id UUID);"),
            SchemaSource("a.sql", "CREATE TABLE alpha (id UUID);"),
        ]
        expected = DDLParser().build_expected_schema(sources)

        assert expected.tables() == ["zeta", "alpha"]

    def test_bundled_sources_parse_cleanly(self):
        """Test the bundled tenant schema parses without warnings."""
        parser = DDLParser()
        expected = parser.build_expected_schema(load_bundled_sources())

        assert parser.warnings == []
        assert len(expected) == 21
        for table in ("users", "profiles", "attendance", "clients", "invoices"):
            assert table in expected
        assert expected.get_column("agency_settings", "working_days").type == "TEXT[]"
        assert expected.get_column("user_roles", "role").default == "employee"
