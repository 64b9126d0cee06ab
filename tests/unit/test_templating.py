from cadencekit.templating import (
    LEAD_VARIABLES,
    SAMPLE_LEAD,
    lead_variables,
    render_for_lead,
    render_template,
)


def test_double_and_single_brace_placeholders():
    text = render_template("Hi {{first_name}} from {company}", {"first_name": "Ada", "company": "Acme"})
    assert text == "Hi Ada from Acme"


def test_unknown_placeholders_are_kept_by_default():
    assert render_template("Hi {{nickname}} / {nickname}", {}) == "Hi {{nickname}} / {nickname}"


def test_unknown_placeholders_can_be_dropped():
    assert render_template("Hi {{nickname}}!", {}, keep_missing=False) == "Hi !"


def test_known_lead_fields_default_to_empty():
    variables = lead_variables({"first_name": "Ada", "plan": "pro", "title": None})
    assert variables["first_name"] == "Ada"
    assert variables["title"] == ""
    assert variables["plan"] == "pro"
    assert set(LEAD_VARIABLES) <= set(variables)


def test_render_for_lead():
    assert render_for_lead(None, SAMPLE_LEAD) is None
    text = render_for_lead("{{first_name}} at {{company}} ({{plan}})", {"first_name": "Ada"})
    assert text == "Ada at  ({{plan}})"
    assert render_for_lead("Hello {{first_name}}", SAMPLE_LEAD) == "Hello John"
