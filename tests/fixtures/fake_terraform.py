"""
Stand-in for the terraform CLI, driven by FAKE_TF_* environment variables.

    FAKE_TF_INIT_EXIT    exit code for ``init``   (default 0)
    FAKE_TF_APPLY_EXIT   exit code for ``apply``  (default 0)
    FAKE_TF_CALLS        file that gets one line per invoked subcommand
    FAKE_TF_SLEEP        seconds ``apply`` sleeps before creating anything
    FAKE_TF_FILLER       extra stdout lines printed by ``apply``
    FAKE_TF_PARTIAL      "1": ``apply`` splits lines across flushes
    FAKE_TF_INTERLEAVE   "1": ``apply`` alternates stdout and stderr lines
    FAKE_TF_CREATED      resources ``apply`` creates before a non-zero exit

``apply`` reads main.tf from the cwd and reports every declared
resource as created with id ``<type suffix>-<name>``.
"""

import json
import os
import re
import sys
import time

_RESOURCE_RE = re.compile(r'^resource "(\w+)" "(\w+)"', re.MULTILINE)


def out(text, stream=None):
    stream = stream or sys.stdout
    stream.write(text)
    stream.flush()


def record_call(name):
    path = os.environ.get("FAKE_TF_CALLS")
    if path:
        with open(path, "a", encoding="utf-8") as f:
            f.write(name + "\n")


def do_init():
    out("Initializing the backend...\n")
    code = int(os.environ.get("FAKE_TF_INIT_EXIT", "0"))
    if code:
        out("Error: Failed to query available provider packages\n", sys.stderr)
        out("Could not retrieve the list of available versions for provider hashicorp/aws\n", sys.stderr)
        return code
    out("Initializing provider plugins...\n")
    out("Terraform has been successfully initialized!\n")
    return 0


def do_apply(args):
    if not any(a == "-var-file=secrets.tfvars" for a in args) or not os.path.isfile("secrets.tfvars"):
        out("Error: secrets.tfvars was not passed\n", sys.stderr)
        return 3
    if "-auto-approve" not in args:
        out("Error: refusing to prompt\n", sys.stderr)
        return 4

    time.sleep(float(os.environ.get("FAKE_TF_SLEEP", "0")))

    if os.environ.get("FAKE_TF_PARTIAL") == "1":
        out("partial-")
        time.sleep(0.05)
        out("line\nsecond ")
        time.sleep(0.05)
        out("line\n")

    if os.environ.get("FAKE_TF_INTERLEAVE") == "1":
        for i in range(1, 4):
            out(f"out-{i}\n")
            time.sleep(0.05)
            out(f"err-{i}\n", sys.stderr)
            time.sleep(0.05)

    for i in range(int(os.environ.get("FAKE_TF_FILLER", "0"))):
        out(f"filler line {i}\n")

    with open("main.tf", encoding="utf-8") as f:
        resources = _RESOURCE_RE.findall(f.read())

    code = int(os.environ.get("FAKE_TF_APPLY_EXIT", "0"))
    if code:
        for rtype, name in resources[:int(os.environ.get("FAKE_TF_CREATED", "0"))]:
            short = rtype.split("_", 1)[1].replace("_", "-")
            out(f"{rtype}.{name}: Creation complete after 1s [id={short}-{name}]\n")
        out("Error: creating EC2 VPC: UnauthorizedOperation\n", sys.stderr)
        return code
    for rtype, name in resources:
        out(f"{rtype}.{name}: Creating...\n")
    for rtype, name in resources:
        short = rtype.split("_", 1)[1].replace("_", "-")
        out(f"{rtype}.{name}: Creation complete after 1s [id={short}-{name}]\n")
    out(f"\nApply complete! Resources: {len(resources)} added, 0 changed, 0 destroyed.\n")
    # Trailing line without a newline
    out("Outputs: none")
    return 0


def main(argv):
    if not argv:
        return 2
    command, args = argv[0], argv[1:]
    if command == "version":
        if "-json" in args:
            out(json.dumps({"terraform_version": "1.6.0-fake"}) + "\n")
        else:
            out("Terraform v1.6.0-fake\n")
        return 0
    record_call(command)
    if command == "init":
        return do_init()
    if command == "apply":
        return do_apply(args)
    out(f"unknown command {command}\n", sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
