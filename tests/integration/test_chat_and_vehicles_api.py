import pytest

from tripsalama.services import rides


@pytest.mark.asyncio
class TestChatAPI:
    async def test_message_thread(self, client, db, headers_for, make_user, make_ride):
        passenger_id = await make_user("passenger")
        driver_id = await make_user("driver", verified=True)
        ride_id = await make_ride(passenger_id)
        await rides.assign_driver(ride_id, driver_id, None, db)
        passenger, driver = headers_for(passenger_id, "passenger"), headers_for(driver_id, "driver")

        resp = await client.post(f"/v1/chat/{ride_id}/messages", headers=driver, json={"content": "Dark grey Logan"})
        assert resp.status_code == 201
        assert resp.json()["is_read"] is False

        resp = await client.get(f"/v1/chat/{ride_id}/unread", headers=passenger)
        assert resp.json() == {"unread": 1}

        resp = await client.get(f"/v1/chat/{ride_id}/messages", headers=passenger)
        assert [m["content"] for m in resp.json()] == ["Dark grey Logan"]
        assert resp.json()[0]["is_read"] is True

        resp = await client.post(f"/v1/chat/{ride_id}/read", headers=passenger)
        assert resp.json() == {"marked": 0}

    async def test_outsider_gets_403(self, client, headers_for, make_user, make_ride):
        ride_id = await make_ride()
        outsider = await make_user("passenger")
        resp = await client.get(f"/v1/chat/{ride_id}/unread", headers=headers_for(outsider, "passenger"))
        assert resp.status_code == 403


@pytest.mark.asyncio
class TestVehiclesAPI:
    async def test_register_and_update(self, client, headers_for, make_user):
        driver_id = await make_user("driver", verified=True)
        headers = headers_for(driver_id, "driver")

        resp = await client.get("/v1/vehicles/current", headers=headers)
        assert resp.status_code == 404

        resp = await client.post("/v1/vehicles", headers=headers, json={
            "brand": "Renault", "model": "Clio", "color": "Red", "license_plate": "8812-B-1", "year": 2019,
        })
        assert resp.status_code == 201
        vehicle_id = resp.json()["id"]

        resp = await client.patch(f"/v1/vehicles/{vehicle_id}", headers=headers, json={"color": "Black"})
        assert resp.status_code == 200
        assert resp.json()["color"] == "Black"

        resp = await client.get("/v1/vehicles/current", headers=headers)
        assert resp.json()["license_plate"] == "8812-B-1"

    async def test_cannot_edit_someone_elses_vehicle(self, client, headers_for, make_user, make_vehicle):
        owner = await make_user("driver", verified=True)
        other = await make_user("driver", verified=True)
        vehicle_id = await make_vehicle(owner)
        resp = await client.patch(
            f"/v1/vehicles/{vehicle_id}", headers=headers_for(other, "driver"), json={"color": "Pink"}
        )
        assert resp.status_code == 403

    async def test_passengers_have_no_vehicles(self, client, headers_for, make_user):
        passenger_id = await make_user("passenger")
        resp = await client.get("/v1/vehicles/current", headers=headers_for(passenger_id, "passenger"))
        assert resp.status_code == 403
