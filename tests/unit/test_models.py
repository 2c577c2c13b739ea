import pytest
from pydantic import ValidationError

from sitebox.models import CreateSiteRequest, DatabaseKind, PortAllocation, sanitize_site_name


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("My Blog", "my-blog"),
        ("shop__v2", "shop__v2"),
        ("--weird   name!!", "weird-name"),
    ],
)
def test_sanitize_site_name(raw, expected):
    assert sanitize_site_name(raw) == expected


def test_request_rejects_unusable_name():
    with pytest.raises(ValidationError):
        CreateSiteRequest(name="???")


def test_request_normalizes_domain():
    request = CreateSiteRequest(name="blog", domain=" Blog.Local ")

    assert request.domain == "blog.local"
    assert request.database is DatabaseKind.MYSQL


def test_request_rejects_bad_domain():
    with pytest.raises(ValidationError):
        CreateSiteRequest(name="blog", domain="not a domain")


def test_site_urls(make_site):
    site = make_site("my-blog", port=8004)

    assert site.url(non_admin=True) == "http://localhost:8004"
    assert site.url(non_admin=False) == "http://my-blog.local:8004"
    assert site.effective_db_name == "my_blog_db"


def test_port_allocation_aliases():
    allocation = PortAllocation.model_validate({"siteId": "abc", "port": 8001, "inUse": True})

    assert allocation.in_use is True
    assert allocation.model_dump(by_alias=True)["siteName"] == ""
