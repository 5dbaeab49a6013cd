"""
Tests for launch orchestration across both protocol versions.
"""

import json
import logging

import pytest

from ltikit.errors import ConfigurationError, TrustError, ValidationError
from ltikit.launch import LaunchController
from ltikit.lti13 import DL_CLAIM, LTI_CLAIM


def _lti10_body(toolkit, now, **overrides):
    params = {
        "lti_message_type": "basic-lti-launch-request",
        "lti_version": "LTI-1p0",
        "oauth_version": "1.0",
        "oauth_signature_method": "HMAC-SHA1",
        "oauth_consumer_key": "k1",
        "oauth_callback": "about:blank",
        "oauth_timestamp": str(now),
        "oauth_nonce": "n1",
        "context_id": "course-1",
        "context_label": "CS101",
        "context_title": "Intro to CS",
        "resource_link_id": "link-1",
        "resource_link_title": "Week 1 Quiz",
        "ext_lti_assignment_id": "assignment-lti-1",
        "launch_presentation_return_url": "https://moodle.example.edu/return",
        "lis_outcome_service_url": "https://moodle.example.edu/grade",
        "lis_result_sourcedid": "sourced-1",
        "user_id": "user-1",
        "lis_person_contact_email_primary": "ada@example.edu",
        "lis_person_name_full": "Ada Lovelace",
        "lis_person_name_given": "Ada",
        "lis_person_name_family": "Lovelace",
        "roles": "Learner",
        "custom_project": "alpha",
        "tool_consumer_info_product_family_code": "moodle",
        "tool_consumer_info_version": "4.3",
        "tool_consumer_instance_guid": "moodle.example.edu",
        "tool_consumer_instance_name": "Example Moodle",
    }
    params.update(overrides)
    params["oauth_signature"] = toolkit.oauth1.sign(
        "HMAC-SHA1", "POST", toolkit.settings.launch_url, params, "s1"
    )
    return params


async def _lti13_body(toolkit, platform, overrides=None):
    form = (
        await toolkit.login(
            {
                "iss": platform.ISSUER,
                "login_hint": "hint-1",
                "target_link_uri": toolkit.settings.launch_url,
                "client_id": platform.CLIENT_ID,
                "lti_deployment_id": platform.DEPLOYMENT_ID,
            }
        )
    )["form"]
    return {"state": form["state"], "id_token": platform.id_token(form["nonce"], overrides)}


class Recorder:
    """Callback that records its arguments and returns a redirect target."""

    def __init__(self, result="/student"):
        self.calls = []
        self.result = result

    def __call__(self, data, consumer, request):
        self.calls.append((data, consumer, request))
        return self.result


class TestLti10Launch:

    async def test_launch_reaches_callback(self, make_toolkit, lti10_consumer, now):
        handler = Recorder()
        toolkit = make_toolkit(handle_launch=handler)

        result = await toolkit.launch(_lti10_body(toolkit, now), "POST", "/lti/provider/launch", "req")

        assert result == "/student"
        ((data, consumer, request),) = handler.calls
        assert request == "req"
        assert consumer.key == "k1"
        assert data.launch_type == "lti1.0"
        assert data.tool_consumer_key == "k1"
        assert data.course_id == "course-1"
        assert data.course_label == "CS101"
        assert data.course_name == "Intro to CS"
        assert data.assignment_id == "link-1"
        assert data.assignment_lti_id == "assignment-lti-1"
        assert data.assignment_name == "Week 1 Quiz"
        assert data.return_url == "https://moodle.example.edu/return"
        assert data.outcome_url == "https://moodle.example.edu/grade"
        assert data.outcome_id == "sourced-1"
        assert data.outcome_ags is None
        assert data.user_lis_id == "user-1"
        assert data.user_lis13_id is None
        assert data.user_email == "ada@example.edu"
        assert data.user_roles == "Learner"
        assert data.custom == {"custom_project": "alpha"}

    async def test_async_callback(self, make_toolkit, lti10_consumer, now):
        async def handler(data, consumer, request):
            return f"/course/{data.course_id}"

        toolkit = make_toolkit(handle_launch=handler)
        assert await toolkit.launch(_lti10_body(toolkit, now)) == "/course/course-1"

    async def test_records_platform_details(self, make_toolkit, lti10_consumer, now, storage, caplog):
        toolkit = make_toolkit(handle_launch=Recorder())

        with caplog.at_level(logging.WARNING, logger="ltikit.launch"):
            await toolkit.launch(_lti10_body(toolkit, now))

        consumer = await storage.get_consumer_by_key("k1")
        assert consumer.tc_product == "moodle"
        assert consumer.tc_version == "4.3"
        assert consumer.tc_guid == "moodle.example.edu"
        assert consumer.tc_name == "Example Moodle"
        assert "Tool Consumer Data Changed!" in caplog.text

    async def test_unchanged_details_not_logged(self, make_toolkit, lti10_consumer, now, caplog):
        toolkit = make_toolkit(handle_launch=Recorder())
        await toolkit.launch(_lti10_body(toolkit, now, oauth_nonce="n1"))

        with caplog.at_level(logging.WARNING, logger="ltikit.launch"):
            caplog.clear()
            await toolkit.launch(_lti10_body(toolkit, now, oauth_nonce="n2"))

        assert "Tool Consumer Data Changed!" not in caplog.text

    async def test_drift_is_saved_not_rejected(self, make_toolkit, lti10_consumer, now, storage):
        handler = Recorder()
        toolkit = make_toolkit(handle_launch=handler)
        await toolkit.launch(_lti10_body(toolkit, now, oauth_nonce="n1"))
        await toolkit.launch(_lti10_body(toolkit, now, oauth_nonce="n2", tool_consumer_info_version="4.4"))

        assert len(handler.calls) == 2
        assert (await storage.get_consumer_by_key("k1")).tc_version == "4.4"

    async def test_missing_callback(self, make_toolkit, lti10_consumer, now):
        toolkit = make_toolkit()
        with pytest.raises(ConfigurationError, match="handle_launch"):
            await toolkit.launch(_lti10_body(toolkit, now))

    async def test_unrecognized_launch(self, make_toolkit):
        toolkit = make_toolkit(handle_launch=Recorder())
        with pytest.raises(ValidationError, match="Missing id_token or oauth_consumer_key"):
            await toolkit.launch({"user_id": "1"})


class TestLti13Launch:

    async def test_resource_link_launch(self, make_toolkit, lti13_consumer, platform):
        handler = Recorder()
        toolkit = make_toolkit(handle_launch=handler)

        assert await toolkit.launch(await _lti13_body(toolkit, platform)) == "/student"

        ((data, consumer, _),) = handler.calls
        assert consumer.key == "canvas-key"
        assert data.launch_type == "lti1.3"
        assert data.tool_consumer_key == "canvas-key"
        assert data.course_id == "course-13"
        assert data.course_label == "CS101"
        assert data.assignment_lti_id == "link-9"
        assert data.assignment_name == "Week 1 Quiz"
        assert data.outcome_url == platform.LINEITEM_URL
        assert data.outcome_id is None
        assert json.loads(data.outcome_ags)["lineitem"] == platform.LINEITEM_URL
        assert data.user_lis13_id == "user-sub-42"
        assert data.user_name == "Ada Lovelace"
        assert data.user_roles == ["http://purl.imsglobal.org/vocab/lis/v2/membership#Learner"]
        assert data.custom == {"project": "alpha"}
        assert consumer.tc_product == "canvas"

    async def test_migrated_user_id(self, make_toolkit, lti13_consumer, platform):
        handler = Recorder()
        toolkit = make_toolkit(handle_launch=handler)
        body = await _lti13_body(
            toolkit,
            platform,
            {LTI_CLAIM + "lti1p1": {"user_id": "legacy-user", "resource_link_id": "legacy-link"}},
        )

        await toolkit.launch(body)

        data = handler.calls[0][0]
        assert data.user_lis_id == "legacy-user"
        assert data.assignment_id == "legacy-link"

    async def test_numeric_claims_become_strings(self, make_toolkit, lti13_consumer, platform):
        handler = Recorder()
        toolkit = make_toolkit(handle_launch=handler)
        body = await _lti13_body(
            toolkit,
            platform,
            {
                LTI_CLAIM + "context": {"id": 13, "label": "CS101", "title": "Intro to CS"},
                LTI_CLAIM + "lti1p1": {"user_id": 42, "resource_link_id": 9},
            },
        )

        assert await toolkit.launch(body) == "/student"

        data = handler.calls[0][0]
        assert data.course_id == "13"
        assert data.user_lis_id == "42"
        assert data.assignment_id == "9"

    async def test_deep_linking_launch(self, make_toolkit, lti13_consumer, platform):
        deeplinks = Recorder(result="/pick")
        launches = Recorder()
        toolkit = make_toolkit(handle_launch=launches, handle_deeplink=deeplinks)
        body = await _lti13_body(
            toolkit,
            platform,
            {
                LTI_CLAIM + "message_type": "LtiDeepLinkingRequest",
                DL_CLAIM + "deep_linking_settings": {
                    "deep_link_return_url": platform.ISSUER + "/deep_linking_response",
                },
                LTI_CLAIM + "launch_presentation": {"return_url": platform.ISSUER + "/courses/13"},
            },
        )

        assert await toolkit.launch(body) == "/pick"

        assert launches.calls == []
        data = deeplinks.calls[0][0]
        assert data.launch_type == "lti1.3deeplink"
        assert data.deep_link_return_url == platform.ISSUER + "/deep_linking_response"
        assert data.return_url == platform.ISSUER + "/courses/13"
        assert data.course_id == "course-13"

    async def test_deep_linking_without_callback(self, make_toolkit, lti13_consumer, platform):
        toolkit = make_toolkit(handle_launch=Recorder())
        body = await _lti13_body(toolkit, platform, {LTI_CLAIM + "message_type": "LtiDeepLinkingRequest"})
        with pytest.raises(ConfigurationError, match="handle_deeplink"):
            await toolkit.launch(body)


class TestUpdateLms:

    async def test_unknown_key(self, make_toolkit):
        toolkit = make_toolkit()
        with pytest.raises(TrustError, match="Cannot find LTI Consumer"):
            await toolkit.launcher.update_lms("nobody", "p", "g", "n", "v")

    def test_launch_data10_custom_only(self):
        data = LaunchController.launch_data10(
            {"oauth_consumer_key": "k1", "custom_a": "1", "ext_b": "2"}
        )
        assert data.custom == {"custom_a": "1"}
        assert data.course_id is None
