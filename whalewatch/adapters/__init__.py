"""Git integration for pushing an updated file to a new branch."""