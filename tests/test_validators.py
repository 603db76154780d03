"""Tests for input validators"""
import pytest

from sfsync.utils.validators import (
    ValidationError,
    validate_api_name,
    validate_project_name,
    validate_soql_query,
    validate_source_files,
    validate_url,
)


class TestSoql:

    @pytest.mark.parametrize("query", [
        "SELECT Id FROM Account",
        "select * from Account",
        "SELECT Id, (SELECT Id FROM Contacts) FROM Account WHERE Name != null",
    ])
    def test_valid(self, query):
        assert validate_soql_query(query)

    @pytest.mark.parametrize("query", [
        "SELECT Id FROM Contact WHERE Title = 'Insert Coordinator'",
        "SELECT Id FROM Account WHERE Name LIKE '%--%'",
        "SELECT Id FROM Account WHERE Name = 'a;b'",
        "SELECT Id FROM Case WHERE Subject = 'Please update me'",
        "SELECT Id FROM Account WHERE Name = 'O\\'Brien (sales'",
    ])
    def test_patterns_inside_literals_are_allowed(self, query):
        assert validate_soql_query(query)

    @pytest.mark.parametrize("query", [
        "",
        "DELETE FROM Account",
        "SELECT Id FROM Account; DELETE FROM Account",
        "SELECT Id FROM Account -- comment",
        "SELECT Id, (SELECT Id FROM Contacts FROM Account",
    ])
    def test_invalid(self, query):
        with pytest.raises(ValidationError):
            validate_soql_query(query)


class TestNames:

    def test_api_names(self):
        assert validate_api_name("Invoice__c")
        with pytest.raises(ValidationError):
            validate_api_name("1Account")
        with pytest.raises(ValidationError):
            validate_api_name("Account Name")

    def test_project_names(self):
        assert validate_project_name("my-org.sandbox")
        with pytest.raises(ValidationError):
            validate_project_name("a/b")
        with pytest.raises(ValidationError):
            validate_project_name("..")

    def test_urls(self):
        assert validate_url("https://login.salesforce.com", require_https=True)
        with pytest.raises(ValidationError):
            validate_url("http://login.salesforce.com", require_https=True)


class TestSourceFiles:

    def test_existing_files(self, tmp_path):
        path = tmp_path / "A.cls"
        path.write_text("class A")

        assert validate_source_files([str(path), ""]) == [str(path)]

    def test_empty_and_missing(self, tmp_path):
        with pytest.raises(ValidationError):
            validate_source_files([])
        with pytest.raises(ValidationError):
            validate_source_files([str(tmp_path / "missing.cls")])
