# makes `cicd` and `stacks` importable when running pytest from a checkout
