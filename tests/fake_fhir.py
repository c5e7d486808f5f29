"""
fake_fhir.py
------------
MTB FHIR Bridge: In-memory FHIR repository for tests
----------------------------------------------------
A small FHIR R4 server behind ``httpx.MockTransport``.  It implements just
the parts of the REST API the bridge relies on:

    POST  <base>                    transaction bundles (DELETE, POST, PUT in
                                    that order), conditional upsert,
                                    ``urn:uuid:`` and conditional references
    GET   <base>/<Type>?...         identifier, subject, part-of and
                                    component-value-concept search, with
                                    _include, _include:iterate and _revinclude
    DELETE <base>/<Type>?identifier conditional delete
    DELETE <base>/<Type>/<id>       delete by id

Usage:
    fake = FakeFhirServer()
    client = FhirClient(fake.base_url, transport=fake.transport())
"""

import copy
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx

BASE_URL = "http://fhir.test/fhir"

# Search parameter / include name → resource field.
_FIELDS = {
    "subject":     "subject",
    "result":      "result",
    "specimen":    "specimen",
    "derived-from": "derivedFrom",
    "part-of":     "partOf",
    "focus":       "focus",
}


class FakeFhirServer:

    def __init__(self, base_url: str = BASE_URL, page_size: Optional[int] = None) -> None:
        self.base_url = base_url
        self.base_path = httpx.URL(base_url).path.rstrip("/")
        self.page_size = page_size
        self.store: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.requests: List[Tuple[str, str]] = []
        self.transactions: List[Dict[str, Any]] = []
        self.reject_transactions: Optional[Tuple[int, Dict[str, Any]]] = None
        self.fail_deletes: set = set()
        self._next_id = 1

    # ── Public helpers ───────────────────────────────────────────────────────

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def all(self, resource_type: str) -> List[Dict[str, Any]]:
        return list(self.store.get(resource_type, {}).values())

    def count(self, resource_type: str) -> int:
        return len(self.store.get(resource_type, {}))

    def put(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        """Store *resource* directly (test setup), assigning an id if needed."""
        resource = copy.deepcopy(resource)
        resource.setdefault("id", self._new_id())
        self.store.setdefault(resource["resourceType"], {})[resource["id"]] = resource
        return resource

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len(self.base_path):].strip("/")
        self.requests.append((request.method, str(request.url)))

        if request.method == "POST" and path == "":
            return self._transaction(json.loads(request.content))
        if request.method == "GET" and path.startswith("page/"):
            return self._page(request)
        if request.method == "GET" and "/" not in path:
            return self._search(path, request.url.params.multi_items())
        if request.method == "DELETE":
            parts = path.split("/")
            if len(parts) == 2:
                return self._delete_by_id(parts[0], parts[1])
            return self._conditional_delete(path, request.url.params.multi_items())
        return httpx.Response(400, json=_outcome(f"unsupported {request.method} {path}"))

    # ── Transactions ─────────────────────────────────────────────────────────

    def _transaction(self, bundle: Dict[str, Any]) -> httpx.Response:
        self.transactions.append(bundle)
        if self.reject_transactions is not None:
            status, body = self.reject_transactions
            return httpx.Response(status, json=body)

        entries = bundle.get("entry", [])
        seen_urls = set()
        for entry in entries:
            url = entry["request"]["url"]
            if entry["request"]["method"] in ("PUT", "DELETE") and url in seen_urls:
                return httpx.Response(400, json=_outcome(f"duplicate entry {url}"))
            seen_urls.add(url)

        responses: Dict[int, Dict[str, Any]] = {}
        order = (
            [i for i, e in enumerate(entries) if e["request"]["method"] == "DELETE"]
            + [i for i, e in enumerate(entries) if e["request"]["method"] == "POST"]
            + [i for i, e in enumerate(entries) if e["request"]["method"] == "PUT"]
        )

        for i in order:
            entry = entries[i]
            if entry["request"]["method"] == "DELETE":
                resource_type, params = _split_url(entry["request"]["url"])
                for resource in self._find(resource_type, params):
                    del self.store[resource_type][resource["id"]]
                responses[i] = {"status": "204 No Content"}

        # Assign ids first so that urn:uuid references can be rewritten.
        assigned: Dict[str, str] = {}
        targets: Dict[int, Tuple[str, str, bool]] = {}
        for i in order:
            entry = entries[i]
            method = entry["request"]["method"]
            if method == "DELETE":
                continue
            resource_type = entry["resource"]["resourceType"]
            created = True
            if method == "PUT":
                _, params = _split_url(entry["request"]["url"])
                found = self._find(resource_type, params)
                if len(found) > 1:
                    return httpx.Response(412, json=_outcome("multiple matches"))
                if found:
                    resource_id, created = found[0]["id"], False
                else:
                    resource_id = self._new_id()
            else:
                resource_id = self._new_id()
            targets[i] = (resource_type, resource_id, created)
            if entry.get("fullUrl"):
                assigned[entry["fullUrl"]] = f"{resource_type}/{resource_id}"

        for i, (resource_type, resource_id, created) in targets.items():
            resource = copy.deepcopy(entries[i]["resource"])
            try:
                self._rewrite(resource, assigned)
            except LookupError as exc:
                return httpx.Response(412, json=_outcome(str(exc)))
            resource["id"] = resource_id
            self.store.setdefault(resource_type, {})[resource_id] = resource
            responses[i] = {
                "status":   "201 Created" if created else "200 OK",
                "location": f"{resource_type}/{resource_id}/_history/1",
            }

        return httpx.Response(200, json={
            "resourceType": "Bundle",
            "type":         "transaction-response",
            "entry":        [{"response": responses[i]} for i in range(len(entries))],
        })

    def _rewrite(self, node: Any, assigned: Dict[str, str]) -> None:
        if isinstance(node, dict):
            ref = node.get("reference")
            if isinstance(ref, str):
                if ref in assigned:
                    node["reference"] = assigned[ref]
                elif "?" in ref:
                    resource_type, params = _split_url(ref)
                    found = self._find(resource_type, params)
                    if len(found) != 1:
                        raise LookupError(f"conditional reference {ref} matched {len(found)}")
                    node["reference"] = f"{resource_type}/{found[0]['id']}"
            for value in node.values():
                self._rewrite(value, assigned)
        elif isinstance(node, list):
            for item in node:
                self._rewrite(item, assigned)

    # ── Search ───────────────────────────────────────────────────────────────

    def _find(self, resource_type: str, params: List[Tuple[str, str]]) -> List[Dict[str, Any]]:
        found = []
        criteria = [(k, v) for k, v in params if not k.startswith("_")]
        for resource in self.store.get(resource_type, {}).values():
            if all(_matches(resource, key, value) for key, value in criteria):
                found.append(resource)
        return found

    def _search(self, resource_type: str, params: List[Tuple[str, str]]) -> httpx.Response:
        matches = self._find(resource_type, params)
        included: List[Dict[str, Any]] = []
        keys = {_key(r) for r in matches}

        def add(resource: Dict[str, Any]) -> bool:
            if _key(resource) in keys:
                return False
            keys.add(_key(resource))
            included.append(resource)
            return True

        for name, value in params:
            if name == "_revinclude":
                source_type, field = value.split(":")
                for resource in self.all(source_type):
                    if any(r in {_key(m) for m in matches} for r in _refs(resource, _FIELDS[field])):
                        add(resource)

        includes = [(n, v) for n, v in params if n in ("_include", "_include:iterate")]
        for name, value in includes:
            if name == "_include":
                self._follow(value, matches, add)
        changed = True
        while changed:
            changed = False
            for name, value in includes:
                if name == "_include:iterate":
                    changed |= self._follow(value, matches + included, add)

        entries = [self._entry(r, "match") for r in matches]
        entries += [self._entry(r, "include") for r in included]
        return self._respond(entries)

    def _follow(self, spec: str, sources: List[Dict[str, Any]], add) -> bool:
        source_type, field = spec.split(":")
        changed = False
        for resource in list(sources):
            if resource["resourceType"] != source_type:
                continue
            for ref in _refs(resource, _FIELDS[field]):
                target_type, target_id = ref.split("/")
                target = self.store.get(target_type, {}).get(target_id)
                if target is not None:
                    changed |= add(target)
        return changed

    def _entry(self, resource: Dict[str, Any], mode: str) -> Dict[str, Any]:
        return {
            "fullUrl":  f"{self.base_url}/{_key(resource)}",
            "resource": copy.deepcopy(resource),
            "search":   {"mode": mode},
        }

    def _respond(self, entries: List[Dict[str, Any]]) -> httpx.Response:
        if self.page_size is None or len(entries) <= self.page_size:
            return httpx.Response(200, json=_searchset(entries))
        self._pages = [entries[i:i + self.page_size] for i in range(0, len(entries), self.page_size)]
        return httpx.Response(200, json=self._page_bundle(0))

    def _page(self, request: httpx.Request) -> httpx.Response:
        index = int(request.url.path.rsplit("/", 1)[-1])
        return httpx.Response(200, json=self._page_bundle(index))

    def _page_bundle(self, index: int) -> Dict[str, Any]:
        bundle = _searchset(self._pages[index])
        if index + 1 < len(self._pages):
            bundle["link"] = [{"relation": "next", "url": f"{self.base_url}/page/{index + 1}"}]
        return bundle

    # ── Deletes ──────────────────────────────────────────────────────────────

    def _conditional_delete(self, resource_type: str, params: List[Tuple[str, str]]) -> httpx.Response:
        if resource_type in self.fail_deletes:
            return httpx.Response(409, json=_outcome("delete refused"))
        for resource in self._find(resource_type, params):
            del self.store[resource_type][resource["id"]]
        return httpx.Response(200, json=_outcome("deleted"))

    def _delete_by_id(self, resource_type: str, resource_id: str) -> httpx.Response:
        if f"{resource_type}/{resource_id}" in self.fail_deletes:
            return httpx.Response(409, json=_outcome("delete refused"))
        if resource_id not in self.store.get(resource_type, {}):
            return httpx.Response(404, json=_outcome("not found"))
        del self.store[resource_type][resource_id]
        return httpx.Response(200, json=_outcome("deleted"))

    def _new_id(self) -> str:
        resource_id = str(self._next_id)
        self._next_id += 1
        return resource_id


# ── Matching helpers ──────────────────────────────────────────────────────────

def _key(resource: Dict[str, Any]) -> str:
    return f"{resource['resourceType']}/{resource['id']}"


def _refs(resource: Dict[str, Any], field: str) -> List[str]:
    value = resource.get(field)
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    return [v["reference"] for v in value if isinstance(v, dict) and v.get("reference")]


def _matches(resource: Dict[str, Any], key: str, value: str) -> bool:
    if key == "identifier":
        system, _, code = value.partition("|")
        for identifier in resource.get("identifier") or []:
            if identifier.get("system") == system and (code == "" or identifier.get("value") == code):
                return True
        return False
    if key == "component-value-concept":
        wanted = {tuple(token.split("|", 1)) for token in value.split(",")}
        for component in resource.get("component") or []:
            for c in (component.get("valueCodeableConcept") or {}).get("coding") or []:
                if (c.get("system"), c.get("code")) in wanted:
                    return True
        return False
    if key in _FIELDS:
        return bool(set(value.split(",")) & set(_refs(resource, _FIELDS[key])))
    raise ValueError(f"unsupported search parameter {key}")


def _split_url(url: str) -> Tuple[str, List[Tuple[str, str]]]:
    resource_type, _, query = url.partition("?")
    params = []
    for part in query.split("&") if query else []:
        key, _, value = part.partition("=")
        params.append((key, value))
    return resource_type, params


def _searchset(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"resourceType": "Bundle", "type": "searchset", "total": len(entries), "entry": entries}


def _outcome(text: str) -> Dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "issue": [{"severity": "information", "code": "informational", "diagnostics": text}],
    }
