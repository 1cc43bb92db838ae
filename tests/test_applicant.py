import json
import re
from unittest.mock import patch

import pytest
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

import crud
import logic
import models
import schemas
import uploads

PDF_BYTES = b"%PDF-1.4\n% test resume\n"
RESUME_URL_PATTERN = re.compile(
    r"^https://test\.supabase\.co/storage/v1/object/public/resumes/resumes/Jane_Doe_[A-Za-z0-9]+_\d{20}_[0-9a-f]{6}\.pdf$"
)


def create_profile(test_client, user, **fields):
    data = {"first_name": "Jane", "last_name": "Doe", "email": "j@x.com"}
    data.update(fields)
    return test_client.post(
        "/api/applicant/profile",
        headers=user.headers,
        data=data,
        files={"resume": ("jane.pdf", PDF_BYTES, "application/pdf")},
    )


@pytest.fixture
def applicant(make_user):
    return make_user("applicant")


# --- Profile creation ---


def test_create_profile_round_trip(test_client, applicant, object_store):
    response = create_profile(test_client, applicant)

    assert response.status_code == status.HTTP_201_CREATED
    body = response.json()
    assert body["message"] == "Profile created successfully"
    profile = body["profile"]
    assert profile["id"]
    assert profile["id"] == applicant.user_id
    assert profile["email"] == "j@x.com"
    assert RESUME_URL_PATTERN.match(profile["resume_url"])
    assert object_store.removals == []
    assert object_store.objects[("resumes", object_store.uploads[0][1])] == PDF_BYTES


def test_create_profile_requires_names(test_client, applicant, object_store, db_session: Session):
    response = test_client.post(
        "/api/applicant/profile",
        headers=applicant.headers,
        data={"first_name": "Jane"},
        files={"resume": ("jane.pdf", PDF_BYTES, "application/pdf")},
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["message"] == "First name and last name are required"
    assert object_store.call_count == 0
    assert crud.get_applicant_profile(db_session, applicant.user_id) is None


def test_create_profile_rejects_non_pdf_before_any_store_call(test_client, applicant, object_store, db_session):
    response = test_client.post(
        "/api/applicant/profile",
        headers=applicant.headers,
        data={"first_name": "Jane", "last_name": "Doe"},
        files={"resume": ("jane.docx", b"PK\x03\x04", "application/msword")},
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "Unsupported resume type" in response.json()["message"]
    assert object_store.call_count == 0
    assert crud.get_applicant_profile(db_session, applicant.user_id) is None


def test_create_profile_twice_is_rejected(test_client, applicant, object_store):
    assert create_profile(test_client, applicant).status_code == status.HTTP_201_CREATED

    response = create_profile(test_client, applicant)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["message"] == "Profile already exists"
    assert len(object_store.uploads) == 1


def test_failed_upload_on_create_leaves_no_profile(test_client, applicant, object_store, db_session):
    object_store.upload_error = "Bucket not found"

    response = create_profile(test_client, applicant)

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert crud.get_applicant_profile(db_session, applicant.user_id) is None

    # The client can simply try again
    object_store.upload_error = None
    assert create_profile(test_client, applicant).status_code == status.HTTP_201_CREATED


@pytest.mark.parametrize(
    "raw_skills, expected",
    [
        (json.dumps(["Python", "SQL"]), ["Python", "SQL"]),
        ("Welding", ["Welding"]),
    ],
)
def test_create_profile_parses_skills(test_client, applicant, raw_skills, expected):
    response = create_profile(test_client, applicant, skills=raw_skills, experience_years="3")

    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["profile"]["skills"] == expected
    assert response.json()["profile"]["experience_years"] == 3


# --- Resume and photo replacement ---


def test_resume_upload_replaces_previous_object(test_client, applicant, object_store):
    old_url = create_profile(test_client, applicant).json()["profile"]["resume_url"]
    old_path = object_store.path_from_public_url("resumes", old_url)

    response = test_client.post(
        "/api/applicant/profile/upload",
        headers=applicant.headers,
        files={"resume": ("new.pdf", b"%PDF-1.7 new", "application/pdf")},
    )

    assert response.status_code == status.HTTP_200_OK
    new_url = response.json()["resume_url"]
    assert new_url != old_url
    assert RESUME_URL_PATTERN.match(new_url)
    assert object_store.removals == [("resumes", [old_path])]
    assert ("resumes", old_path) not in object_store.objects

    fetched = test_client.get("/api/applicant/profile", headers=applicant.headers)
    assert fetched.json()["profile"]["resume_url"] == new_url


def test_resume_upload_without_profile_is_404(test_client, applicant, object_store):
    response = test_client.post(
        "/api/applicant/profile/upload",
        headers=applicant.headers,
        files={"resume": ("new.pdf", PDF_BYTES, "application/pdf")},
    )

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json()["message"] == "Profile not found"
    assert object_store.call_count == 0


def test_oversized_photo_rejected_without_store_calls(test_client, applicant, object_store, db_session):
    crud.create_applicant_profile(
        db_session,
        applicant.user_id,
        applicant.email,
        schemas.ApplicantProfileCreate(first_name="Jane", last_name="Doe"),
    )
    six_megabytes = b"\xff\xd8\xff" + b"0" * (6 * 1024 * 1024)

    response = test_client.post(
        "/api/applicant/profile/photo",
        headers=applicant.headers,
        files={"photo": ("me.jpg", six_megabytes, "image/jpeg")},
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "5MB" in response.json()["message"]
    assert object_store.call_count == 0


def test_photo_upload_stores_image(test_client, applicant, object_store):
    create_profile(test_client, applicant)

    response = test_client.post(
        "/api/applicant/profile/photo",
        headers=applicant.headers,
        files={"photo": ("me.png", b"\x89PNG\r\n", "image/png")},
    )

    assert response.status_code == status.HTTP_200_OK
    photo_url = response.json()["photo_url"]
    assert photo_url.startswith("https://test.supabase.co/storage/v1/object/public/photos/photos/Jane_Doe_")
    assert photo_url.endswith(".png")
    # Resume is untouched by a photo upload
    assert response.json()["profile"]["resume_url"]
    assert object_store.removals == []


def test_photo_upload_rejects_gif(test_client, applicant, object_store):
    create_profile(test_client, applicant)
    uploads_before = len(object_store.uploads)

    response = test_client.post(
        "/api/applicant/profile/photo",
        headers=applicant.headers,
        files={"photo": ("me.gif", b"GIF89a", "image/gif")},
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert len(object_store.uploads) == uploads_before


def test_profile_keyed_by_user_id_is_still_found(test_client, applicant, object_store, db_session):
    legacy = models.ApplicantProfile(
        id="legacy-profile-id",
        user_id=applicant.user_id,
        email=applicant.email,
        first_name="Jane",
        last_name="Doe",
    )
    db_session.add(legacy)
    db_session.commit()

    fetched = test_client.get("/api/applicant/profile", headers=applicant.headers)
    assert fetched.status_code == status.HTTP_200_OK
    assert fetched.json()["profile"]["id"] == "legacy-profile-id"

    response = test_client.post(
        "/api/applicant/profile/upload",
        headers=applicant.headers,
        files={"resume": ("cv.pdf", PDF_BYTES, "application/pdf")},
    )

    assert response.status_code == status.HTTP_200_OK
    db_session.expire_all()
    # Written to the row found by the fallback, keyed by its durable id
    assert crud.get_applicant_profile(db_session, "legacy-profile-id").resume_url == response.json()["resume_url"]
    assert crud.get_applicant_profile(db_session, applicant.user_id) is None


# --- Read / update / delete ---


def test_update_profile_fields(test_client, applicant):
    create_profile(test_client, applicant)

    response = test_client.put(
        "/api/applicant/profile",
        headers=applicant.headers,
        json={"phone": "555-0100", "skills": ["Forklift"]},
    )

    assert response.status_code == status.HTTP_200_OK
    profile = response.json()["profile"]
    assert profile["phone"] == "555-0100"
    assert profile["skills"] == ["Forklift"]
    assert profile["first_name"] == "Jane"


def test_update_profile_with_nothing_to_change(test_client, applicant):
    create_profile(test_client, applicant)

    response = test_client.put("/api/applicant/profile", headers=applicant.headers, json={})

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["message"] == "No fields to update"


def test_update_profile_cannot_set_file_urls(test_client, applicant):
    create_profile(test_client, applicant)

    response = test_client.put(
        "/api/applicant/profile",
        headers=applicant.headers,
        json={"resume_url": "https://evil.example/cv.pdf"},
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_delete_profile_removes_row_and_files(test_client, applicant, object_store, db_session):
    resume_url = create_profile(test_client, applicant).json()["profile"]["resume_url"]

    response = test_client.delete("/api/applicant/profile", headers=applicant.headers)

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"message": "Profile deleted successfully"}
    assert object_store.removals == [("resumes", [object_store.path_from_public_url("resumes", resume_url)])]
    assert crud.get_applicant_profile(db_session, applicant.user_id) is None
    assert test_client.get("/api/applicant/profile", headers=applicant.headers).status_code == 404


def test_delete_profile_survives_storage_failure(test_client, applicant, object_store, db_session):
    create_profile(test_client, applicant)
    object_store.remove_error = "storage unavailable"

    response = test_client.delete("/api/applicant/profile", headers=applicant.headers)

    assert response.status_code == status.HTTP_200_OK
    assert crud.get_applicant_profile(db_session, applicant.user_id) is None


# --- Password change ---


def test_change_password_goes_through_provider(test_client, applicant, identity_provider):
    response = test_client.post(
        "/api/applicant/profile/change-password",
        headers=applicant.headers,
        json={"current_password": "secret123", "new_password": "better-secret"},
    )

    assert response.status_code == status.HTTP_200_OK
    assert identity_provider.password_updates == [(applicant.user_id, "better-secret")]


def test_change_password_with_wrong_current_password(test_client, applicant, identity_provider):
    response = test_client.post(
        "/api/applicant/profile/change-password",
        headers=applicant.headers,
        json={"current_password": "guess", "new_password": "better-secret"},
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["message"] == "Current password is incorrect"
    assert identity_provider.password_updates == []


@pytest.mark.parametrize("field", ["first_name", "last_name"])
def test_update_cannot_null_names(test_client, applicant, db_session, field):
    create_profile(test_client, applicant)

    response = test_client.put("/api/applicant/profile", headers=applicant.headers, json={field: None})

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert f"{field}: Value error, cannot be null" in response.json()["message"]
    db_session.expire_all()
    profile = crud.get_applicant_profile(db_session, applicant.user_id)
    assert (profile.first_name, profile.last_name) == ("Jane", "Doe")


def test_update_can_clear_optional_fields(test_client, applicant):
    create_profile(test_client, applicant, phone="555-0100")

    response = test_client.put("/api/applicant/profile", headers=applicant.headers, json={"phone": None})

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["profile"]["phone"] is None


def test_create_profile_rejects_invalid_email(test_client, applicant, object_store, db_session):
    response = create_profile(test_client, applicant, email="not-an-email")

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "Invalid email format" in response.json()["message"]
    assert object_store.call_count == 0
    assert crud.get_applicant_profile(db_session, applicant.user_id) is None


def test_create_profile_normalises_email(test_client, applicant):
    response = create_profile(test_client, applicant, email=" Jane.Doe@Example.COM ")

    assert response.status_code == status.HTTP_201_CREATED
    assert response.json()["profile"]["email"] == "jane.doe@example.com"


@pytest.mark.asyncio
async def test_concurrent_create_losing_the_insert_is_rejected(
    applicant, object_store, db_session, test_settings
):
    # Another request inserted the row after this one's existence check
    existing = crud.create_applicant_profile(
        db_session,
        applicant.user_id,
        applicant.email,
        schemas.ApplicantProfileCreate(first_name="Jane", last_name="Doe"),
    )
    existing_id = existing.id
    # Forget the row locally so the insert reaches the database constraint
    db_session.expunge_all()
    current_user = schemas.AuthContext(
        user_id=applicant.user_id, email=applicant.email, role=schemas.Role.applicant, access_token=applicant.token
    )
    purpose = uploads.resume_purpose(test_settings)
    upload = uploads.ValidatedUpload(filename="cv.pdf", content_type="application/pdf", content=PDF_BYTES)
    fields = schemas.ApplicantProfileCreate(first_name="Janet", last_name="Roe")

    with patch("logic.crud.get_applicant_profile", return_value=None), patch(
        "logic.crud.get_applicant_profile_by_user_id", return_value=None
    ):
        with pytest.raises(HTTPException) as exc_info:
            await logic.create_applicant_profile(db_session, object_store, current_user, fields, upload, purpose)

    assert exc_info.value.status_code == status.HTTP_400_BAD_REQUEST
    assert exc_info.value.detail == "Profile already exists"
    assert object_store.call_count == 0
    db_session.expire_all()
    assert crud.get_applicant_profile(db_session, existing_id).first_name == "Jane"
