from collections import OrderedDict


def _continue() -> None:
    """Asks the user to continue."""
    answer = input("Continue Y/N? ")
    if answer.lower().strip() == "n":
        print("Aborting deployment!")
        exit(-1)


def _confirm_transaction(description: str) -> None:
    """Asks the user to confirm a transaction before it is signed and submitted."""
    answer = input(f"Sign and submit {description} Y/N? ")
    if answer.lower().strip() == "n":
        print("Aborting deployment!")
        exit(-1)


def _confirm_resolution(resolved_params: OrderedDict, section: str) -> None:
    """Asks the user to confirm the resolved parameters of one params file section."""
    if len(resolved_params) == 0:
        print(f"\n(i) No parameters for {section}")
        _continue()
        return

    print(f"\nParameters for {section}")
    for name, resolved_value in resolved_params.items():
        print(f"\t{name}={resolved_value}")
    _continue()
