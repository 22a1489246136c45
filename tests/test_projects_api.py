from dataset_service.models import Dataset, Project, ProjectRole


async def test_creator_becomes_admin(client, make_user):
    alice = await make_user("alice")

    response = await client.post("/projects", json={"name": "evals"}, headers=alice.headers)
    assert response.status_code == 201
    project_id = response.json()["id"]

    response = await client.get("/projects", headers=alice.headers)
    assert response.json() == [
        {
            "id": project_id,
            "name": "evals",
            "created_at": response.json()[0]["created_at"],
            "role": "ADMIN",
        }
    ]


async def test_projects_are_listed_per_member(client, make_user, make_project):
    alice = await make_user("alice")
    bob = await make_user("bob")
    await make_project("alice-only", [(alice, ProjectRole.ADMIN)])
    shared = await make_project("shared", [(alice, ProjectRole.ADMIN), (bob, ProjectRole.VIEWER)])

    response = await client.get("/projects", headers=bob.headers)
    assert [project["id"] for project in response.json()] == [shared]
    assert response.json()[0]["role"] == "VIEWER"


async def test_get_project_requires_membership(client, make_user, make_project):
    alice = await make_user("alice")
    mallory = await make_user("mallory")
    project_id = await make_project("p", [(alice, ProjectRole.ADMIN)])

    response = await client.get(f"/projects/{project_id}", headers=mallory.headers)
    assert response.status_code == 403

    response = await client.get("/projects/does-not-exist", headers=alice.headers)
    assert response.status_code == 404


async def test_viewer_cannot_rename_project(client, make_user, make_project):
    alice = await make_user("alice")
    bob = await make_user("bob")
    project_id = await make_project("p", [(alice, ProjectRole.ADMIN), (bob, ProjectRole.VIEWER)])

    response = await client.patch(f"/projects/{project_id}", json={"name": "x"}, headers=bob.headers)
    assert response.status_code == 403

    response = await client.patch(
        f"/projects/{project_id}", json={"name": "renamed"}, headers=alice.headers
    )
    assert response.status_code == 200
    assert response.json()["name"] == "renamed"


async def test_delete_project_requires_matching_name(
    client, fetch, count_rows, make_user, make_project, make_dataset
):
    alice = await make_user("alice")
    project_id = await make_project("keep-me", [(alice, ProjectRole.ADMIN)])
    await make_dataset(project_id)

    response = await client.request(
        "DELETE", f"/projects/{project_id}", json={"confirm_name": "wrong"}, headers=alice.headers
    )
    assert response.json() == {
        "status": "error",
        "message": "Project name does not match",
        "payload": None,
    }
    assert await fetch(Project, project_id) is not None

    response = await client.request(
        "DELETE", f"/projects/{project_id}", json={"confirm_name": "keep-me"}, headers=alice.headers
    )
    assert response.json()["status"] == "success"
    assert await fetch(Project, project_id) is None
    assert await count_rows(Dataset) == 0


async def test_only_admin_can_delete_project(client, make_user, make_project):
    alice = await make_user("alice")
    bob = await make_user("bob")
    project_id = await make_project("p", [(alice, ProjectRole.ADMIN), (bob, ProjectRole.MEMBER)])

    response = await client.request(
        "DELETE", f"/projects/{project_id}", json={"confirm_name": "p"}, headers=bob.headers
    )
    assert response.status_code == 403


async def test_add_and_remove_members(client, make_user, make_project):
    alice = await make_user("alice")
    bob = await make_user("bob")
    project_id = await make_project("p", [(alice, ProjectRole.ADMIN)])

    response = await client.post(
        f"/projects/{project_id}/members",
        json={"login": "bob", "role": "VIEWER"},
        headers=alice.headers,
    )
    assert response.json()["status"] == "success"
    members = {member["login"]: member["role"] for member in response.json()["payload"]}
    assert members == {"alice": "ADMIN", "bob": "VIEWER"}

    response = await client.post(
        f"/projects/{project_id}/members",
        json={"login": "bob", "role": "MEMBER"},
        headers=alice.headers,
    )
    members = {member["login"]: member["role"] for member in response.json()["payload"]}
    assert members["bob"] == "MEMBER"

    response = await client.delete(f"/projects/{project_id}/members/{bob.id}", headers=alice.headers)
    assert response.json()["status"] == "success"

    response = await client.get(f"/projects/{project_id}/members", headers=alice.headers)
    assert [member["login"] for member in response.json()] == ["alice"]


async def test_unknown_member_login(client, make_user, make_project):
    alice = await make_user("alice")
    project_id = await make_project("p", [(alice, ProjectRole.ADMIN)])

    response = await client.post(
        f"/projects/{project_id}/members", json={"login": "ghost"}, headers=alice.headers
    )
    assert response.json() == {"status": "error", "message": "No user with login ghost", "payload": None}


async def test_last_admin_cannot_be_removed_or_demoted(client, make_user, make_project):
    alice = await make_user("alice")
    project_id = await make_project("p", [(alice, ProjectRole.ADMIN)])

    response = await client.delete(
        f"/projects/{project_id}/members/{alice.id}", headers=alice.headers
    )
    assert response.json()["status"] == "error"

    response = await client.post(
        f"/projects/{project_id}/members",
        json={"login": "alice", "role": "VIEWER"},
        headers=alice.headers,
    )
    assert response.json()["message"] == "A project must keep at least one admin"
