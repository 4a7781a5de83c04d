"""
Public tracking tests — GET /api/v1/track/<code> without authentication.
"""

from datetime import date, timedelta

from reqdesk.services import approval_engine, request_service, tracking_service


def _submitted_item(org, acting):
    req = request_service.create_request(
        "item_request", acting(org.requestor),
        {"items": [{"category": "printer", "item_description": "Team printer"}]},
    )
    approval_engine.submit_request("item_request", req.id, acting(org.requestor))
    return req


class TestTracking:
    def test_drafts_are_not_trackable(self, client, org, acting):
        req = request_service.create_request(
            "item_request", acting(org.requestor),
            {"items": [{"category": "mouse", "item_description": "Mouse"}]},
        )
        res = client.get(f"/api/v1/track/{req.reference_code}")
        assert res.status_code == 404

    def test_timeline_after_approval(self, client, org, acting):
        req = _submitted_item(org, acting)
        approval_engine.approve(
            "item_request", req.id, acting(org.dept_approver), comments="internal note",
        )

        res = client.get(f"/api/v1/track/{req.reference_code}")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "department_approved"
        assert data["department"] == "Finance"
        assert [e["event"] for e in data["timeline"]] == ["submitted", "step", "step"]
        first, second = data["timeline"][1:]
        assert (first["step_order"], first["status"]) == (1, "approved")
        assert first["actor"] == org.dept_approver.full_name
        assert (second["step_order"], second["status"]) == (2, "pending")
        assert "verification_status" not in data

    def test_projection_hides_private_fields(self, client, org, acting):
        req = _submitted_item(org, acting)
        approval_engine.decline("item_request", req.id, acting(org.dept_approver), comments="secret reason")
        body = client.get(f"/api/v1/track/{req.reference_code}").get_data(as_text=True)
        assert "secret reason" not in body
        assert "Team printer" not in body
        assert "department_declined" in body

    def test_lowercase_code(self, client, org, acting):
        req = _submitted_item(org, acting)
        res = client.get(f"/api/v1/track/{req.reference_code.lower()}")
        assert res.status_code == 200
        assert res.get_json()["reference_code"] == req.reference_code

    def test_unknown_codes(self, client):
        assert client.get("/api/v1/track/XYZ-20260101-000001").status_code == 404
        assert client.get("/api/v1/track/REQ-20260101-999999").status_code == 404

    def test_vehicle_projection_has_verification(self, org, acting):
        travel = (date.today() + timedelta(days=2)).isoformat()
        req = request_service.create_request(
            "vehicle_request", acting(org.requestor),
            {
                "request_type": "point_to_point_service",
                "purpose": "Audit visit",
                "travel_date_from": travel,
                "travel_date_to": travel,
                "destination": "Branch 4",
                "departure_time": "07:00",
                "passengers": ["Auditor"],
            },
        )
        approval_engine.submit_request("vehicle_request", req.id, acting(org.requestor))
        data = tracking_service.track(req.reference_code)
        assert data["kind"] == "vehicle_request"
        assert data["verification_status"] == "none"
        assert data["timeline"][1]["step_name"] == "Department Approval"
