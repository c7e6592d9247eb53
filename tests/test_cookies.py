import json
import os

from ytrelay.cookies import load_cookies, parse_cookie_header, to_netscape, write_cookie_file


class TestParseCookieHeader:
    def test_pairs(self):
        assert parse_cookie_header("a=1; b=x=y;  ; bad; c = 3 ") == {"a": "1", "b": "x=y", "c": "3"}


class TestLoadCookies:
    def test_header_gets_default_domain(self):
        cookies = load_cookies("SID=abc; HSID=def")
        assert cookies[0] == {"name": "SID", "value": "abc", "domain": ".youtube.com", "path": "/"}

    def test_json_list(self):
        raw = json.dumps([{"name": "SID", "value": "abc", "domain": ".youtube.com"}, {"value": "nameless"}])
        assert [c["name"] for c in load_cookies(raw)] == ["SID"]

    def test_json_object_wrapper(self):
        raw = json.dumps({"cookies": [{"name": "SESSDATA", "value": "s"}]})
        assert load_cookies(raw)[0]["name"] == "SESSDATA"


class TestToNetscape:
    def test_fields(self):
        content = to_netscape([
            {"name": "SID", "value": "abc", "domain": ".youtube.com", "path": "/", "secure": True,
             "expirationDate": 1893456000.5},
            {"name": "LOGIN", "value": "x", "domain": "accounts.google.com", "httpOnly": True},
        ])
        lines = content.splitlines()
        assert lines[0] == "# Netscape HTTP Cookie File"
        assert ".youtube.com\tTRUE\t/\tTRUE\t1893456000\tSID\tabc" in lines
        assert "#HttpOnly_accounts.google.com\tFALSE\t/\tFALSE\t0\tLOGIN\tx" in lines


class TestWriteCookieFile:
    def test_writes_and_prunes(self, tmp_path):
        cookies_dir = tmp_path / "cookies"
        cookies_dir.mkdir()
        for i in range(3):
            old = cookies_dir / f"cookies_{i}.txt"
            old.write_text("old")
            os.utime(old, (i + 1, i + 1))

        path = write_cookie_file("SID=abc", str(cookies_dir), keep=2)

        remaining = sorted(p.name for p in cookies_dir.iterdir())
        assert len(remaining) == 2
        assert os.path.basename(path) in remaining
        assert "cookies_2.txt" in remaining
        with open(path, encoding="utf-8") as f:
            assert "\tSID\tabc" in f.read()
