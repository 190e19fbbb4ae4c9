"""
Tests for team slug derivation and allocation.
"""
from unittest.mock import patch

import pytest

from crewhub.errors import ValidationError
from crewhub.models import Team, db
from crewhub.slugs import _base36, allocate_slug, disambiguate, slug_exists, slugify
from crewhub.teams import create_team, update_team


class TestSlugify:
    """Test the name to slug transformation."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Acme", "acme"),
            ("Acme Corp", "acme-corp"),
            ("  Acme -- Corp!! ", "acme-corp"),
            ("Data & AI / Berlin", "data-ai-berlin"),
            ("Team 42", "team-42"),
            ("Ünïcode Team", "n-code-team"),
        ],
    )
    def test_slugify(self, name, expected):
        """Should lower-case, collapse non-alphanumerics and trim hyphens"""
        assert slugify(name) == expected

    def test_slugify_rejects_names_without_alphanumerics(self):
        """Should refuse names that leave an empty slug"""
        with pytest.raises(ValidationError):
            slugify("!!! ---")


class TestDisambiguate:
    """Test the time-derived suffix."""

    @pytest.mark.parametrize(
        "value,expected", [(0, "0"), (35, "z"), (36, "10"), (1295, "zz")]
    )
    def test_base36(self, value, expected):
        assert _base36(value) == expected

    def test_suffix_is_base36_milliseconds(self):
        """Should append the current time in milliseconds as base 36"""
        with patch("crewhub.slugs.time.time", return_value=2.0):
            assert disambiguate("acme") == "acme-1jk"

    def test_random_suffix(self):
        """Should add a random component when asked"""
        with patch("crewhub.slugs.time.time", return_value=2.0), patch(
            "crewhub.slugs.secrets.token_hex", return_value="beef"
        ):
            assert disambiguate("acme", with_random=True) == "acme-1jkbeef"


class TestAllocateSlug:
    """Test slug allocation against existing teams."""

    def test_free_slug_is_used_as_is(self, app):
        with app.app_context():
            assert allocate_slug("Acme Corp") == "acme-corp"

    def test_taken_slug_gets_suffix(self, app, team):
        """Should disambiguate when another team already uses the slug"""
        with app.app_context():
            assert slug_exists("acme")
            with patch("crewhub.slugs.time.time", return_value=2.0):
                assert allocate_slug("ACME") == "acme-1jk"

    def test_own_slug_is_not_a_collision(self, app, team):
        """Should ignore the team being renamed"""
        with app.app_context():
            assert allocate_slug("Acme", exclude_team_id=team) == "acme"

    def test_second_team_with_same_name(self, app, users, team):
        """Should give a second team of the same name a distinct slug"""
        with app.app_context():
            other = create_team(users["outsider"], {"name": "Acme"})
            assert other.slug != "acme"
            assert other.slug.startswith("acme-")

    def test_rename_regenerates_slug(self, app, users, team):
        """Should derive a new slug when the name changes"""
        with app.app_context():
            renamed = update_team(team, users["owner"], {"name": "Acme Labs"})
            assert renamed.slug == "acme-labs"
            assert db.session.get(Team, team).slug == "acme-labs"

    def test_rename_to_same_slug_keeps_slug(self, app, users, team):
        """Should keep the slug when the new name slugifies identically"""
        with app.app_context():
            renamed = update_team(team, users["owner"], {"name": "ACME"})
            assert renamed.name == "ACME"
            assert renamed.slug == "acme"

    def test_create_retries_on_slug_race(self, app, users, team):
        """Should retry with a random suffix when the checked slug is taken at commit"""
        with app.app_context():
            # Simulate a concurrent insert winning between the check and the commit
            with patch("crewhub.teams.allocate_slug", return_value="acme"):
                created = create_team(users["outsider"], {"name": "Acme"})
            assert created.slug.startswith("acme-")
            assert created.slug != "acme"
