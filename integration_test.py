"""
Integration Test - Tests the RUNNING server via HTTP
Run this while app.py is running on http://localhost:8000
"""

import sys
import uuid

import requests

BASE_URL = "http://localhost:8000"

HEAD = {"X-User-Name": "Smoke Head", "X-User-Role": "Department Head"}
FINANCE = {"X-User-Name": "Smoke Finance", "X-User-Role": "Finance Manager"}
CLERK = {"X-User-Name": "Smoke Clerk", "X-User-Role": "Accounts Clerk"}


def run_checks():
    print("=" * 70)
    print("TESTING LIVE SERVER AT", BASE_URL)
    print("=" * 70)

    suffix = uuid.uuid4().hex[:6].upper()
    department = f"Smoke-{suffix}"

    try:
        # Check 1: Health
        print("\n[CHECK 1] Health Check")
        resp = requests.get(f"{BASE_URL}/health")
        assert resp.status_code == 200
        print("✅ PASS: Server is healthy")

        # Check 2: Directory and product
        print("\n[CHECK 2] Department head and product")
        resp = requests.put(f"{BASE_URL}/api/departments/{department}", json={"head": "Smoke Head"})
        assert resp.status_code == 200
        resp = requests.post(f"{BASE_URL}/api/products", json={
            "code": f"SMK-{suffix}",
            "name": "Smoke Test Reagent",
            "quantity": 8,
        })
        assert resp.status_code == 201
        product_id = resp.json()["id"]
        print(f"✅ PASS: Created product {product_id} with 8 on hand")

        # Check 3: Submit
        print("\n[CHECK 3] Submit requisition")
        resp = requests.post(f"{BASE_URL}/api/requisitions", json={
            "department": department,
            "requestedBy": "Smoke Requester",
            "requesterEmail": "smoke@example.com",
            "products": [{"productId": product_id, "requestedQuantity": 10, "unit": "kits"}],
        })
        assert resp.status_code == 201
        requisition = resp.json()
        assert requisition["status"] == "Pending"
        assert requisition["approver1"] == "Smoke Head"
        print(f"✅ PASS: Submitted {requisition['dispatchNumber']}")

        # Check 4: Two-tier approval
        print("\n[CHECK 4] Confirm and approve")
        resp = requests.post(f"{BASE_URL}/api/requisitions/{requisition['id']}/confirm", json={}, headers=HEAD)
        assert resp.json()["status"] == "Confirmed"
        resp = requests.post(f"{BASE_URL}/api/requisitions/{requisition['id']}/approve", json={}, headers=FINANCE)
        assert resp.json()["status"] == "Approved"
        print("✅ PASS: Department head then finance approved")

        # Check 5: Issue with shortage
        print("\n[CHECK 5] Issue past available stock")
        resp = requests.post(
            f"{BASE_URL}/api/requisitions/{requisition['id']}/issue",
            json={"isDriver": True},
            headers=CLERK,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["requisition"]["status"] == "Issued"
        assert data["shortages"][0]["shortage"] == 2
        resp = requests.get(f"{BASE_URL}/api/products/{product_id}")
        assert resp.json()["quantity"] == -2
        print("✅ PASS: Stock went to -2 and the shortage was reported")

        # Check 6: No double issue
        print("\n[CHECK 6] Issue again is refused")
        resp = requests.post(f"{BASE_URL}/api/requisitions/{requisition['id']}/issue", json={}, headers=CLERK)
        assert resp.status_code == 409
        assert resp.json()["detail"]["current_status"] == "Issued"
        print("✅ PASS: Second issue rejected with INVALID_STATE")

        # Check 7: Handover and receipt
        print("\n[CHECK 7] Handover and final receipt")
        resp = requests.post(f"{BASE_URL}/api/requisitions/{requisition['id']}/handover", json={
            "recipientName": "Smoke Requester", "signature": "sig",
        })
        assert resp.json()["status"] == "Delivered"
        resp = requests.post(f"{BASE_URL}/api/requisitions/{requisition['id']}/receipt", json={
            "receiverName": "Smoke Requester", "signature": "sig", "receiptMethod": "system_scan",
        })
        assert resp.json()["status"] == "Completed"
        print("✅ PASS: Requisition completed")

        print("\n" + "=" * 70)
        print("ALL INTEGRATION CHECKS PASSED! ✅")
        print("=" * 70)
        return True

    except requests.exceptions.ConnectionError:
        print("\n❌ ERROR: Cannot connect to server")
        print("Make sure the server is running: python app.py")
        return False
    except AssertionError as e:
        print(f"\n❌ CHECK FAILED: {e}")
        import traceback
        traceback.print_exc()
        return False


if __name__ == "__main__":
    success = run_checks()
    sys.exit(0 if success else 1)
