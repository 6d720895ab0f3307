from bson import ObjectId

from conftest import auth, stock_of

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32

LISTING_FORM = {
    "title": "Sapiens",
    "author": "Yuval Noah Harari",
    "description": "Paperback, lightly read, no markings.",
    "condition": "like-new",
    "price": "350",
    "category": "non-fiction",
    "city": "Pune",
    "quantity": "2",
    "contactPhone": "+91 98765 43210",
    "contactEmail": "seller_one@gmail.com",
    "upiId": "seller@okbank",
}


def test_create_listing_with_images(client, db, seller, upload_dir):
    resp = client.post(
        "/listings",
        data=LISTING_FORM,
        files=[("images", ("front.png", PNG, "image/png")), ("images", ("back.jpg", b"\xff\xd8\xff", "image/jpeg"))],
        headers=auth(seller),
    )
    assert resp.status_code == 201, resp.text
    listing = resp.json()["listing"]
    assert listing["sellerId"] == seller["user"]["id"]
    assert listing["quantity"] == 2
    assert listing["sellerContact"] == {"phone": "+91 98765 43210", "email": "seller_one@gmail.com"}
    assert len(listing["images"]) == 2
    for name in listing["images"]:
        assert (upload_dir / name).is_file()

    served = client.get(f"/uploads/{listing['images'][0]}")
    assert served.status_code == 200
    assert served.content == PNG


def test_create_listing_defaults_quantity(client, seller):
    form = {k: v for k, v in LISTING_FORM.items() if k != "quantity"}
    resp = client.post("/listings", data=form, headers=auth(seller))
    assert resp.status_code == 201
    assert resp.json()["listing"]["quantity"] == 1


def test_create_listing_validation(client, seller, upload_dir):
    resp = client.post("/listings", data={**LISTING_FORM, "category": "poetry", "price": "0"},
                       files=[("images", ("front.png", PNG, "image/png"))], headers=auth(seller))
    assert resp.status_code == 400
    assert {d["field"] for d in resp.json()["details"]} == {"category", "price"}
    assert list(upload_dir.iterdir()) == []


def test_create_listing_requires_session(client):
    client.cookies.clear()
    assert client.post("/listings", data=LISTING_FORM).status_code == 401


def test_search_filters(client, make_listing):
    make_listing(title="Dune", author="Frank Herbert", price=250, category="fiction", city="Mumbai")
    make_listing(title="Clean Code", author="Robert Martin", price=600, category="academic", city="Pune")
    make_listing(title="Dune Messiah", author="Frank Herbert", price=300, category="fiction", city="Delhi")

    def titles(query):
        resp = client.get(f"/listings{query}")
        assert resp.status_code == 200
        return sorted(item["title"] for item in resp.json()["listings"])

    assert titles("?search=dune") == ["Dune", "Dune Messiah"]
    assert titles("?category=academic") == ["Clean Code"]
    assert titles("?author=herbert&minPrice=260") == ["Dune Messiah"]
    assert titles("?maxPrice=300&city=mum") == ["Dune"]

    body = client.get("/listings?limit=2&page=2").json()
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert len(body["listings"]) == 1

    assert client.get("/listings?category=poetry").status_code == 400
    assert client.get("/listings?limit=51").status_code == 400


def test_get_listing(client, make_listing, seller):
    listing_id = make_listing(seller_id=seller["user"]["id"])
    body = client.get(f"/listings/{listing_id}").json()
    assert body["listing"]["title"] == "The Great Gatsby"
    assert body["listing"]["seller"] == {"id": seller["user"]["id"], "username": "seller_one"}

    assert client.get(f"/listings/{ObjectId()}").status_code == 404
    assert client.get("/listings/abc").status_code == 400


def test_only_owner_or_admin_deletes(client, db, seller, buyer, admin, make_listing):
    mine = make_listing(seller_id=seller["user"]["id"])
    other = make_listing(title="Emma", author="Jane Austen", seller_id=seller["user"]["id"])

    resp = client.delete(f"/listings/{mine}", headers=auth(buyer))
    assert resp.status_code == 403
    assert resp.json() == {"error": "Not authorized to delete this listing"}

    assert client.delete(f"/listings/{mine}", headers=auth(seller)).status_code == 200
    assert client.delete(f"/listings/{other}", headers=auth(admin)).status_code == 200
    assert db["listing"].count_documents({}) == 0


def test_admin_sets_stock(client, db, admin, seller, make_listing):
    listing_id = make_listing(quantity=5)

    resp = client.put(f"/listings/{listing_id}/stock", json={"quantity": 0, "reason": "Sold at fair"},
                      headers=auth(admin))
    assert resp.status_code == 200
    assert resp.json()["listing"]["quantity"] == 0
    assert stock_of(db, listing_id) == 0

    assert client.put(f"/listings/{listing_id}/stock", json={"quantity": -1},
                      headers=auth(admin)).status_code == 400
    assert client.put(f"/listings/{listing_id}/stock", json={"quantity": 3},
                      headers=auth(seller)).status_code == 403


def test_missing_upload(client):
    assert client.get("/uploads/nothing.png").status_code == 404
    assert client.get("/uploads/.hidden").status_code == 404


def test_seed_is_admin_only_and_runs_once(client, db, admin, buyer):
    assert client.post("/admin/seed", headers=auth(buyer)).status_code == 403

    body = client.post("/admin/seed", headers=auth(admin)).json()
    assert body["seeded"] is True
    assert db["listing"].count_documents({}) == body["count"]
    assert client.post("/admin/seed", headers=auth(admin)).json()["seeded"] is False
